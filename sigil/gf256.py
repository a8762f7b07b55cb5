"""GF(256) arithmetic over the AES polynomial 0x11B, table driven.

Parity symbols are combined with these helpers; XOR is addition.
"""

from __future__ import annotations

from typing import List

_POLY = 0x11B


def _build_tables():
    exp = [0] * 512
    log = [0] * 256
    x = 1
    for i in range(255):
        exp[i] = x
        log[x] = i
        # multiply by the generator (x + 1)
        hi = x << 1
        if hi & 0x100:
            hi ^= _POLY
        x = hi ^ x
    for i in range(255, 512):
        exp[i] = exp[i - 255]
    return exp, log


_EXP, _LOG = _build_tables()
_MUL_ROWS: List[bytes] = []


def gf_mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return _EXP[_LOG[a] + _LOG[b]]


def gf_inv(a: int) -> int:
    if a == 0:
        raise ZeroDivisionError("No inverse for zero in GF(256)")
    return _EXP[255 - _LOG[a]]


def _mul_row(coeff: int) -> bytes:
    if not _MUL_ROWS:
        for c in range(256):
            _MUL_ROWS.append(bytes(gf_mul(x, c) for x in range(256)))
    return _MUL_ROWS[coeff]


def gf_mul_bytes(data: bytes, coeff: int) -> bytes:
    if coeff == 0:
        return bytes(len(data))
    if coeff == 1:
        return bytes(data)
    return bytes(data).translate(_mul_row(coeff))


def gf_add_bytes(dest: bytearray, src: bytes):
    """XOR ``src`` into ``dest`` in place (``src`` may be shorter)."""
    n = len(src)
    if n == 0:
        return
    mixed = int.from_bytes(dest[:n], "little") ^ int.from_bytes(src, "little")
    dest[:n] = mixed.to_bytes(n, "little")
