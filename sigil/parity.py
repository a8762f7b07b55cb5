from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .gf256 import gf_add_bytes, gf_inv, gf_mul, gf_mul_bytes
from .hashutil import blake2s_16
from .rx import rx_combinations

logger = logging.getLogger(__name__)

# Residual elimination is skipped above this many unknowns.
MAX_ELIMINATION_VARS = 64


@dataclass
class LRPStripe:
    stripe_index: int
    data_chunks: List[int]
    parity: bytes
    tag16: bytes

    def intact(self) -> bool:
        return blake2s_16(self.parity) == self.tag16


@dataclass
class RXParity:
    seed_id: int
    parity: bytes
    tag16: bytes

    def intact(self) -> bool:
        return blake2s_16(self.parity) == self.tag16


@dataclass
class ParitySet:
    symbol_size: int
    chunk_count: int
    lrp_k: int = 0
    stripes: List[LRPStripe] = field(default_factory=list)
    rx_seed_base: bytes = b""
    rx: List[RXParity] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.stripes and not self.rx


def _pad(data: bytes, size: int) -> bytes:
    if len(data) == size:
        return bytes(data)
    buf = bytearray(size)
    buf[: len(data)] = data
    return bytes(buf)


def build_parity(
    chunk_bytes: Sequence[bytes],
    *,
    symbol_size: int,
    lrp_k: int,
    rx_count: int,
    rx_seed_base: bytes,
) -> ParitySet:
    """Compute LRP stripes (XOR over ``lrp_k`` consecutive chunks) and RX parity.

    Every chunk is zero-padded to ``symbol_size`` before it enters a parity sum.
    """
    n = len(chunk_bytes)
    ps = ParitySet(symbol_size=symbol_size, chunk_count=n, lrp_k=lrp_k, rx_seed_base=rx_seed_base)
    if n == 0:
        return ps
    padded = [_pad(c, symbol_size) for c in chunk_bytes]
    if lrp_k > 0:
        for stripe_index, start in enumerate(range(0, n, lrp_k)):
            members = list(range(start, min(n, start + lrp_k)))
            acc = bytearray(symbol_size)
            for i in members:
                gf_add_bytes(acc, padded[i])
            pbytes = bytes(acc)
            ps.stripes.append(LRPStripe(stripe_index, members, pbytes, blake2s_16(pbytes)))
    if rx_count > 0:
        for seed_id, combo in enumerate(rx_combinations(rx_seed_base, rx_count, n)):
            acc = bytearray(symbol_size)
            for idx, coeff in combo:
                gf_add_bytes(acc, gf_mul_bytes(padded[idx], coeff))
            pbytes = bytes(acc)
            ps.rx.append(RXParity(seed_id, pbytes, blake2s_16(pbytes)))
    return ps


def _repair_lrp(ps: ParitySet, known: Dict[int, bytes], unknown: Set[int]) -> Dict[int, bytes]:
    """Solve stripes that lost exactly one data chunk."""
    solved: Dict[int, bytes] = {}
    for stripe in ps.stripes:
        targets = [i for i in stripe.data_chunks if i in unknown]
        if len(targets) != 1 or not stripe.intact():
            continue
        acc = bytearray(stripe.parity)
        for i in stripe.data_chunks:
            if i != targets[0]:
                gf_add_bytes(acc, known[i])
        solved[targets[0]] = bytes(acc)
    return solved


def _build_equations(
    ps: ParitySet, known: Dict[int, bytes], unknown_pos: Dict[int, int]
) -> List[Tuple[Dict[int, int], bytearray]]:
    # Each intact parity gives sum(c_i * x_i) = P - sum(c_known * x_known).
    equations: List[Tuple[Dict[int, int], bytearray]] = []
    rows: List[Tuple[List[Tuple[int, int]], bytes]] = []
    if ps.rx:
        combos = rx_combinations(ps.rx_seed_base, max(p.seed_id for p in ps.rx) + 1, ps.chunk_count)
        for p in ps.rx:
            if p.intact():
                rows.append((combos[p.seed_id], p.parity))
    for stripe in ps.stripes:
        if stripe.intact():
            rows.append(([(i, 1) for i in stripe.data_chunks], stripe.parity))
    for combo, parity in rows:
        rhs = bytearray(parity)
        coeffs: Dict[int, int] = {}
        for idx, coeff in combo:
            pos = unknown_pos.get(idx)
            if pos is not None:
                coeffs[pos] = coeffs.get(pos, 0) ^ coeff
            else:
                gf_add_bytes(rhs, gf_mul_bytes(known[idx], coeff))
        coeffs = {p: c for p, c in coeffs.items() if c}
        if coeffs:
            equations.append((coeffs, rhs))
    return equations


def _peel(equations: List[Tuple[Dict[int, int], bytearray]]) -> Dict[int, bytes]:
    """Iteratively solve degree-1 equations, substituting each solution back."""
    solutions: Dict[int, bytes] = {}
    var_to_eqs: Dict[int, List[int]] = {}
    for i, (coeffs, _rhs) in enumerate(equations):
        for pos in coeffs:
            var_to_eqs.setdefault(pos, []).append(i)
    q = deque(i for i, (coeffs, _rhs) in enumerate(equations) if len(coeffs) == 1)
    while q:
        ei = q.popleft()
        coeffs, rhs = equations[ei]
        if len(coeffs) != 1:
            continue
        (pos, c), = coeffs.items()
        if pos in solutions:
            continue
        value = gf_mul_bytes(bytes(rhs), gf_inv(c))
        solutions[pos] = value
        for ej in var_to_eqs.get(pos, []):
            cdict, rr = equations[ej]
            cc = cdict.pop(pos, 0)
            if cc:
                gf_add_bytes(rr, gf_mul_bytes(value, cc))
                if len(cdict) == 1:
                    q.append(ej)
    return solutions


def _eliminate(
    equations: List[Tuple[Dict[int, int], bytearray]], residual_vars: List[int]
) -> Dict[int, bytes]:
    """Gauss-Jordan elimination over GF(256) for the variables peeling left behind."""
    var_index = {pos: i for i, pos in enumerate(residual_vars)}
    nvars = len(residual_vars)
    A: List[List[int]] = []
    B: List[bytearray] = []
    for coeffs, rhs in equations:
        if not coeffs:
            continue
        row = [0] * nvars
        for pos, c in coeffs.items():
            if pos in var_index:
                row[var_index[pos]] ^= c
        if any(row):
            A.append(row)
            B.append(bytearray(rhs))
    m = len(A)
    r = 0
    pivots = [-1] * nvars
    for c in range(nvars):
        pivot = next((i for i in range(r, m) if A[i][c]), -1)
        if pivot == -1:
            continue
        A[r], A[pivot] = A[pivot], A[r]
        B[r], B[pivot] = B[pivot], B[r]
        inv = gf_inv(A[r][c])
        A[r] = [gf_mul(v, inv) for v in A[r]]
        B[r] = bytearray(gf_mul_bytes(bytes(B[r]), inv))
        for i in range(m):
            factor = A[i][c] if i != r else 0
            if factor:
                A[i] = [a ^ gf_mul(factor, b) for a, b in zip(A[i], A[r])]
                gf_add_bytes(B[i], gf_mul_bytes(bytes(B[r]), factor))
        pivots[c] = r
        r += 1
        if r == m:
            break
    solved: Dict[int, bytes] = {}
    for c, pr in enumerate(pivots):
        # a pivot row fully reduced to a unit vector determines its variable
        if pr != -1 and sum(1 for v in A[pr] if v) == 1:
            solved[residual_vars[c]] = bytes(B[pr])
    return solved


def reconstruct(
    ps: ParitySet,
    available: Dict[int, bytes],
    missing: Iterable[int],
    *,
    lengths: Optional[Dict[int, int]] = None,
) -> Dict[int, bytes]:
    """Rebuild missing chunks from parity.

    Args:
        ps: Parity recorded in the container's residual block.
        available: Chunk index -> verified chunk bytes for every intact chunk.
        missing: Indices to solve for.
        lengths: Optional true lengths; solutions are trimmed to them.

    Returns:
        Chunk index -> candidate bytes. Callers must re-check each candidate
        against the chunk hash before trusting it.
    """
    unknown = set(missing)
    if not unknown or ps.is_empty():
        return {}
    size = ps.symbol_size
    known = {i: _pad(b, size) for i, b in available.items()}
    solved = _repair_lrp(ps, known, unknown)
    for i, data in solved.items():
        known[i] = data
    unknown.difference_update(solved)
    if unknown:
        order = sorted(unknown)
        unknown_pos = {idx: pos for pos, idx in enumerate(order)}
        if all(i in known for i in range(ps.chunk_count) if i not in unknown):
            equations = _build_equations(ps, known, unknown_pos)
            by_pos = _peel(equations)
            residual_vars = [p for p in range(len(order)) if p not in by_pos]
            if residual_vars and len(residual_vars) <= MAX_ELIMINATION_VARS:
                by_pos.update(_eliminate(equations, residual_vars))
            for pos, data in by_pos.items():
                solved[order[pos]] = data
        else:
            logger.debug("RX solve skipped: chunk bytes unavailable outside the missing set")
    if lengths:
        solved = {i: d[: lengths.get(i, len(d))] for i, d in solved.items()}
    return solved
