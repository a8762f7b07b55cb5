from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


# Magic and version
CONTAINER_MAGIC = b"SIG1"
CONTAINER_VERSION = 1
RESIDUAL_MAGIC = b"SGRS"
RESIDUAL_VERSION = 1

CONTAINER_SUFFIX = ".sg1"


# Entropy coder ids (first byte of every coded stream)
CODEC_STORED = 0
CODEC_DEFLATE = 1
CODEC_ZSTD = 2

CODEC_NAMES = {
    "stored": CODEC_STORED,
    "deflate": CODEC_DEFLATE,
    "zstd": CODEC_ZSTD,
}

DEFAULT_CODEC_ID = CODEC_ZSTD
DEFAULT_ZSTD_LEVEL = 3
DEFAULT_DEFLATE_LEVEL = 6


DEFAULT_CHUNK_SIZE = 1024  # 1 KiB
MAX_CHUNK_SIZE = 1 << 30
HASH_SIZE = 32
SEED_SIZE = 32


# ChaosRegen parameters
R_MIN = 3.57
R_SPAN = 0.43
LOGISTIC_WARMUP = 64
PAIRS_PER_BLOCK = 128  # 256-byte permutation blocks


# Reserved metadata keys
META_SEED = "sigil.seed"
META_KDF = "sigil.kdf"
META_KIND = "sigil.kind"
META_CHUNK_SIZE = "sigil.chunk_size"
META_TIER = "sigil.tier"
META_NAMES = "sigil.names"
RESERVED_PREFIX = "sigil."

KIND_FILE = "file"
KIND_FOLDER = "folder"


# Resilience tiers
TIER_NONE = "none"
TIER_REFLECTION = "reflection"
TIER_SEAL = "seal"
DEFAULT_TIER = TIER_REFLECTION

TIER_IDS = {TIER_NONE: 0, TIER_REFLECTION: 1, TIER_SEAL: 2}


@dataclass(frozen=True)
class TierConfig:
    name: str
    lrp_k: int  # data chunks per XOR stripe; 0 disables LRP
    rx_ppm: int  # RX parity count relative to chunk count, parts per million
    mirror_header: bool


def resolve_tier(
    name: Optional[str],
    *,
    lrp_k: Optional[int] = None,
    rx_ppm: Optional[int] = None,
    mirror_header: Optional[bool] = None,
) -> TierConfig:
    """Map a tier name onto its parity layout, applying any explicit overrides.

    Presets: none -> no residual; reflection -> LRP 1/8;
    seal -> LRP 1/4 + RX 25% + header mirror.
    """
    tier = (name or DEFAULT_TIER).lower()
    if tier == TIER_NONE:
        base = TierConfig(TIER_NONE, 0, 0, False)
    elif tier == TIER_REFLECTION:
        base = TierConfig(TIER_REFLECTION, 8, 0, False)
    elif tier == TIER_SEAL:
        base = TierConfig(TIER_SEAL, 4, 250_000, True)
    else:
        raise ValueError(f"unknown resilience tier: {name}")
    return TierConfig(
        name=base.name,
        lrp_k=base.lrp_k if lrp_k is None else lrp_k,
        rx_ppm=base.rx_ppm if rx_ppm is None else rx_ppm,
        mirror_header=base.mirror_header if mirror_header is None else mirror_header,
    )


# Argon2id parameters for keyed containers
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 64 * 1024  # 64 MiB
ARGON_PARALLELISM = 4
