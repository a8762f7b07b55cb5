from __future__ import annotations

import hashlib
from typing import List, Sequence

from .constants import HASH_SIZE


EMPTY_ROOT = b"\x00" * HASH_SIZE


def blake2s_32(data: bytes) -> bytes:
    return hashlib.blake2s(data, digest_size=32).digest()


def blake2s_16(data: bytes) -> bytes:
    return hashlib.blake2s(data, digest_size=16).digest()


def chunk_hash(data: bytes) -> bytes:
    """Content hash of one chunk's byte range (BLAKE2s-256)."""
    return blake2s_32(data)


def merkle_parent(left32: bytes, right32: bytes) -> bytes:
    return blake2s_32(left32 + right32)


def merkle_levels(leaves: Sequence[bytes]) -> List[List[bytes]]:
    """Return every level of the tree, leaves first and the root level last.

    An unpaired node at the end of a level is paired with itself.
    """
    if not leaves:
        return [[EMPTY_ROOT]]
    level = list(leaves)
    levels = [level]
    while len(level) > 1:
        nxt: List[bytes] = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            nxt.append(merkle_parent(left, right))
        level = nxt
        levels.append(level)
    return levels


def merkle_root(leaves: Sequence[bytes]) -> bytes:
    return merkle_levels(leaves)[-1][0]
