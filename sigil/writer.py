from __future__ import annotations

import logging
import math
import os
import zlib
from pathlib import Path
from typing import Dict, Optional, Union

from . import chaos
from .chunker import split_chunks
from .codec import encode_stream
from .constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CODEC_ID,
    DEFAULT_TIER,
    KIND_FILE,
    META_CHUNK_SIZE,
    META_KDF,
    META_KIND,
    META_SEED,
    META_TIER,
    RESERVED_PREFIX,
    TierConfig,
    resolve_tier,
)
from .container import Container, decode_container, encode_header
from .hashutil import blake2s_16, merkle_root
from .parity import build_parity
from .reader import container_seed
from .residual import Residual
from .seed import derive_seed, keyed_material, open_envelope_key, pack_kdf_params, seal_seed
from .tlv import MetaValue

logger = logging.getLogger(__name__)

Source = Union[bytes, bytearray, memoryview, str, os.PathLike]


def read_source(data_or_path: Source) -> bytes:
    if isinstance(data_or_path, (bytes, bytearray, memoryview)):
        return bytes(data_or_path)
    with open(data_or_path, "rb") as f:
        return f.read()


def _check_user_metadata(metadata: Optional[Dict[str, MetaValue]]) -> Dict[str, MetaValue]:
    meta = dict(metadata or {})
    for key in meta:
        if key.startswith(RESERVED_PREFIX):
            raise ValueError(f"metadata key {key!r} uses the reserved '{RESERVED_PREFIX}' prefix")
    return meta


def rx_parity_count(chunk_count: int, rx_ppm: int) -> int:
    if rx_ppm <= 0 or chunk_count == 0:
        return 0
    return max(2, math.ceil(chunk_count * rx_ppm / 1_000_000))


def build_residual(container: Container, tier: TierConfig, chunk_bytes) -> Optional[Residual]:
    """Compute the residual block for ``container`` under ``tier``; ``None`` for tier none."""
    if not (tier.lrp_k or tier.rx_ppm or tier.mirror_header):
        return None
    parity = build_parity(
        chunk_bytes,
        symbol_size=max((c.length for c in container.chunks), default=0),
        lrp_k=tier.lrp_k,
        rx_count=rx_parity_count(container.chunk_count, tier.rx_ppm),
        rx_seed_base=blake2s_16(b"SIGIL-RX" + container.merkle_root),
    )
    mirror = encode_header(container.header()) if tier.mirror_header else None
    return Residual(tier=tier.name, parity=parity, header_mirror=mirror)


def create(
    data_or_path: Source,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    tier: Union[str, TierConfig] = DEFAULT_TIER,
    password: Optional[str] = None,
    metadata: Optional[Dict[str, MetaValue]] = None,
    codec: int = DEFAULT_CODEC_ID,
    level: Optional[int] = None,
    lineage: Optional[Union[Container, bytes]] = None,
    jobs: Optional[int] = None,
) -> Container:
    """Seal a file (or bytes) into a container.

    Args:
        data_or_path: Raw bytes or a filesystem path to read.
        chunk_size: Payload chunk size in bytes.
        tier: Resilience tier name or an explicit ``TierConfig``.
        password: When given the container is keyed: the seed depends on an
            Argon2id access key and its envelope can only be opened with it.
        metadata: User key/value pairs stored verbatim in the header.
        codec: Preferred entropy coder id (falls back to stored when it does not help).
        level: Optional codec level.
        lineage: A parent container whose seed is reused, so regions that did
            not change between parent and this input produce identical chunks.
        jobs: Worker count for chunk hashing/scoring (default: CPU count).

    Returns:
        The sealed container. Identical inputs and options produce a byte-identical
        container.
    """
    data = read_source(data_or_path)
    user_meta = _check_user_metadata(metadata)
    tier_cfg = tier if isinstance(tier, TierConfig) else resolve_tier(tier)
    checksum = zlib.crc32(data) & 0xFFFFFFFF

    access_key = None
    kdf_params = None
    if password:
        access_key, kdf_params = keyed_material(data, password)
    if lineage is not None:
        parent = decode_container(lineage) if isinstance(lineage, (bytes, bytearray)) else lineage
        seed = container_seed(parent, password=password)
        logger.debug("reusing lineage seed from container with root %s", parent.merkle_root.hex()[:16])
    else:
        seed = derive_seed(data, access_key)

    payload = encode_stream(chaos.transform(data, seed), codec, level)
    chunks = split_chunks(payload, chunk_size, jobs=jobs)
    root = merkle_root([c.hash for c in chunks])

    envelope_key = access_key if access_key is not None else open_envelope_key(root, len(data), checksum)
    meta: Dict[str, MetaValue] = {
        META_KIND: KIND_FILE,
        META_CHUNK_SIZE: chunk_size,
        META_TIER: tier_cfg.name,
        META_SEED: seal_seed(seed, envelope_key, root),
    }
    if kdf_params is not None:
        meta[META_KDF] = pack_kdf_params(kdf_params)
    meta.update(user_meta)

    container = Container(
        metadata=meta,
        original_length=len(data),
        checksum=checksum,
        chunks=chunks,
        merkle_root=root,
        payload=payload,
    )
    container.residual = build_residual(container, tier_cfg, [payload[c.offset : c.end] for c in chunks])
    logger.debug(
        "sealed %d bytes into %d chunk(s), payload %d bytes, tier %s",
        len(data),
        len(chunks),
        len(payload),
        tier_cfg.name,
    )
    return container


def write_container(container: Container, path: Union[str, os.PathLike]) -> int:
    """Write ``container`` to ``path`` via a temp file and atomic rename; return bytes written."""
    blob = container.to_bytes()
    dst = Path(path)
    tmp = dst.with_name(dst.name + ".tmp")
    with open(tmp, "wb") as f:
        f.write(blob)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, dst)
    return len(blob)
