from __future__ import annotations

import struct
from typing import Dict, List, Tuple

from .gf256 import gf_inv, gf_mul
from .hashutil import blake2s_32
from .prng import DeterministicPRNG

Combination = List[Tuple[int, int]]  # (chunk index, GF(256) coefficient)

_MAX_ATTEMPTS = 8


def _attempt_seed(seed_base: bytes, seed_id: int, attempt: int) -> bytes:
    return blake2s_32(seed_base + struct.pack("<II", seed_id, attempt))


def _draw_candidate(seed_base: bytes, seed_id: int, n: int, attempt: int) -> Combination:
    prng = DeterministicPRNG(_attempt_seed(seed_base, seed_id, attempt), seed_id)
    if n == 0:
        return []
    # fixed small degree band {3,4,5}, capped by n
    degree = max(1, min(n, 3 + prng.next_uint(3)))
    # pivot coverage: column (seed_id mod n) is always present
    acc: Dict[int, int] = {seed_id % n: prng.next_nonzero_byte()}
    while len(acc) < degree:
        col = prng.next_uint(n)
        if col in acc:
            continue
        acc[col] = prng.next_nonzero_byte()
    return sorted(acc.items())


def _reduce_row(row: Dict[int, int], basis: List[Tuple[int, Dict[int, int]]]) -> Dict[int, int]:
    # basis rows are normalized so the pivot coefficient is 1
    r = dict(row)
    for pcol, brow in basis:
        coeff = r.get(pcol, 0)
        if not coeff:
            continue
        for c, v in brow.items():
            r[c] = r.get(c, 0) ^ gf_mul(coeff, v)
    return {c: v for c, v in r.items() if v}


def _add_to_basis(row: Dict[int, int], basis: List[Tuple[int, Dict[int, int]]]) -> bool:
    r = _reduce_row(row, basis)
    if not r:
        return False
    pcol = min(r)
    inv = gf_inv(r[pcol])
    basis.append((pcol, {c: gf_mul(v, inv) for c, v in r.items()}))
    basis.sort(key=lambda item: item[0])
    return True


def rx_combinations(seed_base: bytes, count: int, n: int) -> List[Combination]:
    """Deterministically sample ``count`` sparse GF(256) combinations over ``n`` chunks.

    Each row keeps a pivot on column ``seed_id mod n`` and is redrawn (up to a
    fixed attempt cap) while it is linearly dependent on the rows already
    accepted, so encoder and decoder always agree on the same system.
    """
    rows: List[Combination] = []
    if n == 0:
        return rows
    basis: List[Tuple[int, Dict[int, int]]] = []
    for seed_id in range(count):
        combo: Combination = []
        for attempt in range(_MAX_ATTEMPTS + 1):
            combo = _draw_candidate(seed_base, seed_id, n, attempt)
            if _add_to_basis(dict(combo), basis):
                break
        rows.append(combo)
    return rows
