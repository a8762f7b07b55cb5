from __future__ import annotations

import concurrent.futures as _fut
import math
import os
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .constants import MAX_CHUNK_SIZE
from .hashutil import chunk_hash


@dataclass(frozen=True)
class Chunk:
    index: int
    offset: int
    length: int
    hash: bytes
    entropy_score: float

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass(frozen=True)
class RawBytes:
    """Chunk reference into the container's own payload."""
    offset: int
    length: int


@dataclass(frozen=True)
class ChildContainerRoot:
    """Chunk reference to a child container, identified by its Merkle root."""
    root: bytes


def default_jobs(jobs: Optional[int] = None) -> int:
    if jobs is not None:
        return max(1, int(jobs))
    return os.cpu_count() or 1


def shannon_entropy(data: bytes) -> float:
    """H = -sum(p_i * log2 p_i) over byte-value frequencies, in bits per byte."""
    n = len(data)
    if n == 0:
        return 0.0
    h = 0.0
    for count in Counter(data).values():
        p = count / n
        h -= p * math.log2(p)
    return h


def chunk_boundaries(payload_len: int, chunk_size: int) -> List[Tuple[int, int]]:
    if chunk_size <= 0 or chunk_size > MAX_CHUNK_SIZE:
        raise ValueError(f"chunk size out of range: {chunk_size}")
    return [(off, min(chunk_size, payload_len - off)) for off in range(0, payload_len, chunk_size)]


def _score(args) -> Chunk:
    index, offset, piece = args
    return Chunk(index=index, offset=offset, length=len(piece), hash=chunk_hash(piece), entropy_score=shannon_entropy(piece))


def split_chunks(payload: bytes, chunk_size: int, *, jobs: Optional[int] = None) -> List[Chunk]:
    """Partition ``payload`` into fixed-size chunks with hashes and entropy scores.

    Boundaries depend only on ``len(payload)`` and ``chunk_size``. Scoring runs
    on a worker pool; results are merged by index once every worker is done.
    """
    view = memoryview(payload)
    work = [
        (i, off, bytes(view[off : off + ln]))
        for i, (off, ln) in enumerate(chunk_boundaries(len(payload), chunk_size))
    ]
    if not work:
        return []
    with _fut.ThreadPoolExecutor(max_workers=min(default_jobs(jobs), len(work))) as ex:
        scored = list(ex.map(_score, work))
    scored.sort(key=lambda c: c.index)
    return scored


def chunk_matches(payload: bytes, chunk: Chunk) -> bool:
    piece = payload[chunk.offset : chunk.end]
    return len(piece) == chunk.length and chunk_hash(piece) == chunk.hash


def failing_chunks(payload: bytes, chunks: Sequence[Chunk], *, jobs: Optional[int] = None) -> List[int]:
    """Indices of chunks whose bytes are absent, short or do not hash to the stored value."""
    if not chunks:
        return []
    with _fut.ThreadPoolExecutor(max_workers=min(default_jobs(jobs), len(chunks))) as ex:
        ok = list(ex.map(lambda c: chunk_matches(payload, c), chunks))
    return [c.index for c, good in zip(chunks, ok) if not good]
