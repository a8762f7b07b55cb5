"""ChaosRegen: a seeded, exactly invertible byte transform.

Forward pass:

1.  **Framing.** ``u32 length || data || pad`` where ``pad`` is one zero byte
    when needed to make the frame an even number of bytes. Empty input is not
    framed and maps to empty output.
2.  **Diffusion.** A logistic map ``x <- r*x*(1-x)`` with ``r`` in the chaotic
    regime (3.57, 4) is iterated once per byte. Its state selects a multiplier
    ``a`` in [1, 256]; the byte is multiplied in the field Z/257 (bytes are
    shifted to 1..256 first, so the product never leaves that range) and then
    XORed with a BLAKE2b keystream byte.
3.  **Material stretching.** The frame is viewed as byte pairs, grouped into
    blocks of ``PAIRS_PER_BLOCK`` pairs; every block is shuffled with its own
    seeded Fisher-Yates permutation. The last block may be shorter and is
    shuffled with a permutation of its own size.

The inverse runs the passes backwards. Nothing persists between calls.
"""

from __future__ import annotations

import struct
from typing import List, Tuple

from .constants import LOGISTIC_WARMUP, PAIRS_PER_BLOCK, R_MIN, R_SPAN, SEED_SIZE
from .errors import CorruptStream
from .hashutil import blake2s_32
from .prng import DeterministicPRNG


_MODULUS = 257
_INV_257 = [0] + [pow(a, _MODULUS - 2, _MODULUS) for a in range(1, _MODULUS)]
_LEN_PREFIX = struct.Struct("<I")
_MAX_FRAME_DATA = 0xFFFFFFFF

_KEYSTREAM_ID = 1
_RESEED_ID = 2


def _unit_from(raw8: bytes) -> float:
    v = int.from_bytes(raw8, "little") >> 11  # 53 bits
    return (v + 1) / float((1 << 53) + 2)


def _logistic_params(seed: bytes) -> Tuple[float, float]:
    if len(seed) != SEED_SIZE:
        raise ValueError(f"seed must be {SEED_SIZE} bytes")
    x0 = _unit_from(seed[0:8])
    r = R_MIN + R_SPAN * _unit_from(seed[8:16])
    if r >= 4.0:
        r = 3.9999999
    return x0, r


def _diffusion_masks(seed: bytes, n: int) -> Tuple[List[int], bytes]:
    """Return the per-byte Z/257 multipliers and XOR keystream for ``n`` bytes."""
    x, r = _logistic_params(seed)
    reseed = DeterministicPRNG(seed, _RESEED_ID)
    for _ in range(LOGISTIC_WARMUP):
        x = r * x * (1.0 - x)
    multipliers = [0] * n
    for i in range(n):
        nx = r * x * (1.0 - x)
        # Leave collapsed orbits (0, 1 or a fixed point) deterministically.
        if not 0.0 < nx < 1.0 or nx == x:
            nx = reseed.next_unit_float()
        x = nx
        multipliers[i] = (int(x * 4294967296.0) & 0xFF) + 1
    keystream = DeterministicPRNG(seed, _KEYSTREAM_ID).read(n)
    return multipliers, keystream


def _block_permutation(perm_key: bytes, block_index: int, size: int) -> List[int]:
    prng = DeterministicPRNG(perm_key, block_index)
    perm = list(range(size))
    for i in range(size - 1, 0, -1):
        j = prng.next_uint(i + 1)
        perm[i], perm[j] = perm[j], perm[i]
    return perm


def _permute_pairs(frame: bytes, seed: bytes, *, inverse: bool) -> bytes:
    perm_key = blake2s_32(seed + b"PERM")
    out = bytearray(len(frame))
    block_bytes = PAIRS_PER_BLOCK * 2
    for block_index, start in enumerate(range(0, len(frame), block_bytes)):
        block = frame[start : start + block_bytes]
        pairs = len(block) // 2
        perm = _block_permutation(perm_key, block_index, pairs)
        for k, src in enumerate(perm):
            if inverse:
                out[start + 2 * src : start + 2 * src + 2] = block[2 * k : 2 * k + 2]
            else:
                out[start + 2 * k : start + 2 * k + 2] = block[2 * src : 2 * src + 2]
    return bytes(out)


def frame(data: bytes) -> bytes:
    if not data:
        return b""
    if len(data) > _MAX_FRAME_DATA:
        raise ValueError("input exceeds the 4 GiB frame limit")
    body = _LEN_PREFIX.pack(len(data)) + bytes(data)
    if len(body) % 2:
        body += b"\x00"
    return body


def unframe(body: bytes) -> bytes:
    if not body:
        return b""
    if len(body) % 2 or len(body) < _LEN_PREFIX.size:
        raise CorruptStream("transformed frame has an invalid length")
    (n,) = _LEN_PREFIX.unpack_from(body)
    end = _LEN_PREFIX.size + n
    pad = len(body) - end
    if pad not in (0, 1) or (end % 2 == 0) != (pad == 0):
        raise CorruptStream("transformed frame length prefix is inconsistent")
    if pad and body[end] != 0:
        raise CorruptStream("transformed frame padding is not zero")
    return body[_LEN_PREFIX.size : end]


def transform(data: bytes, seed: bytes) -> bytes:
    """Scramble ``data`` under ``seed``; ``inverse_transform`` undoes it exactly."""
    body = frame(data)
    if not body:
        return b""
    multipliers, keystream = _diffusion_masks(seed, len(body))
    diffused = bytes(
        ((((b + 1) * a) % _MODULUS) - 1) ^ k
        for b, a, k in zip(body, multipliers, keystream)
    )
    return _permute_pairs(diffused, seed, inverse=False)


def inverse_transform(data: bytes, seed: bytes) -> bytes:
    if not data:
        return b""
    if len(data) % 2:
        raise CorruptStream("transformed stream has odd length")
    diffused = _permute_pairs(bytes(data), seed, inverse=True)
    multipliers, keystream = _diffusion_masks(seed, len(diffused))
    body = bytes(
        ((((y ^ k) + 1) * _INV_257[a]) % _MODULUS) - 1
        for y, a, k in zip(diffused, multipliers, keystream)
    )
    return unframe(body)
