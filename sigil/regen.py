"""Regeneration engine.

Takes a damaged, truncated or otherwise partial container plus a fixed list of
sibling containers and reconstructs as much of it as the redundancy allows.

States::

    SCANNING -> MATCHING -> SUBSTITUTING -> REASSEMBLING -> RECOVERED
                                                          -> PARTIAL_RECOVERY
                                                          -> FAILED

Scanning reads whatever parses and marks every chunk whose bytes are absent,
short or mismatched as missing. Matching tries the residual parity first and
then the siblings' chunk maps, scanned concurrently; every candidate is
re-hashed against the target's chunk map before it is substituted, so the
engine never writes bytes it could not verify. Confidence starts at
``(n - k) / n`` and only ever grows.
"""

from __future__ import annotations

import concurrent.futures as _fut
import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .chunker import Chunk, default_jobs, failing_chunks
from .container import (
    Container,
    HeaderFields,
    check_chunk_map,
    container_from_mirror,
    decode_container,
    decode_header_mirror,
    encode_header,
)
from .errors import AccessDenied, ChunkBoundsError, InsufficientRedundancy, IntegrityError, MalformedHeader
from .hashutil import chunk_hash, merkle_root
from .parity import reconstruct
from .reader import verified_data
from .residual import Residual, scan_residuals

logger = logging.getLogger(__name__)

SOURCE_PARITY = "parity"


class RegenState(enum.Enum):
    SCANNING = "scanning"
    MATCHING = "matching"
    SUBSTITUTING = "substituting"
    REASSEMBLING = "reassembling"
    RECOVERED = "recovered"
    PARTIAL_RECOVERY = "partial-recovery"
    FAILED = "failed"


@dataclass
class Recovered:
    data: bytes
    container: Container
    confidence: float = 1.0
    sources: Dict[int, str] = field(default_factory=dict)
    confidence_trace: List[float] = field(default_factory=list)


@dataclass
class PartialRecovery:
    confidence: float
    missing_chunks: List[int]
    recovered_ranges: List[Tuple[int, int]]
    payload: bytes
    sources: Dict[int, str] = field(default_factory=dict)
    confidence_trace: List[float] = field(default_factory=list)
    cancelled: bool = False

    def as_error(self) -> InsufficientRedundancy:
        return InsufficientRedundancy(self.missing_chunks)


@dataclass
class Failed:
    reason: str
    confidence: float = 0.0
    confidence_trace: List[float] = field(default_factory=list)


Outcome = Union[Recovered, PartialRecovery, Failed]
SiblingInput = Union[Container, bytes]


def _merge_ranges(chunks: Sequence[Chunk]) -> List[Tuple[int, int]]:
    ranges: List[Tuple[int, int]] = []
    for c in sorted(chunks, key=lambda c: c.offset):
        if ranges and ranges[-1][1] == c.offset:
            ranges[-1] = (ranges[-1][0], c.end)
        else:
            ranges.append((c.offset, c.end))
    return ranges


def _chunk_map_consistent(c: Container) -> bool:
    try:
        check_chunk_map(c.chunks)
    except ChunkBoundsError:
        return False
    return merkle_root([ch.hash for ch in c.chunks]) == c.merkle_root


def _mirror_container(residual: Optional[Residual], blob: bytes, residual_end: int) -> Optional[Container]:
    if residual is None or residual.header_mirror is None:
        return None
    try:
        h = decode_header_mirror(residual.header_mirror)
    except (MalformedHeader, ChunkBoundsError) as exc:
        logger.debug("header mirror unreadable: %s", exc)
        return None
    c = container_from_mirror(h, residual, blob, residual_end)
    return c if _chunk_map_consistent(c) else None


class RegenerationEngine:
    """One regeneration run over a target and a fixed sibling list.

    Args:
        target: Container structure or raw container bytes (possibly damaged).
        siblings: Containers (or raw bytes) that may share chunks with the target.
        password: Needed to reassemble keyed containers.
        cancel: Checked between sibling scans; when set the run stops and
            reports a partial recovery with the work done so far.
        jobs: Maximum concurrent sibling scans.

    Damage to header fields outside the chunk map (length, checksum, seed
    envelope) is repaired from a header mirror when the tier carries one. A
    wrong password or a missing seed envelope ends the run as :class:`Failed`;
    a keyed container without any password raises :class:`PasswordRequired`
    so callers can prompt and retry.
    """

    def __init__(
        self,
        target: Union[Container, bytes],
        siblings: Sequence[SiblingInput] = (),
        *,
        password: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        jobs: Optional[int] = None,
    ):
        self.target = target
        self.siblings = list(siblings)
        self.password = password
        self.cancel = cancel or threading.Event()
        self.jobs = jobs
        self.state = RegenState.SCANNING
        self.history: List[RegenState] = [RegenState.SCANNING]
        self.container: Optional[Container] = None
        self.buffer = bytearray()
        self.missing: set = set()
        self.sources: Dict[int, str] = {}
        self.confidence_trace: List[float] = []
        self._lock = threading.Lock()

    # state

    def _enter(self, state: RegenState) -> None:
        if self.state is not state:
            logger.debug("regeneration: %s -> %s", self.state.value, state.value)
            self.state = state
            self.history.append(state)

    @property
    def confidence(self) -> float:
        if self.container is None:
            return 0.0
        n = self.container.chunk_count
        if n == 0:
            return 1.0
        return (n - len(self.missing)) / n

    # scanning

    def _scan(self) -> Optional[Container]:
        if isinstance(self.target, Container):
            c = self.target
            if _chunk_map_consistent(c):
                return c
            if c.residual is not None and c.residual.header_mirror is not None:
                try:
                    h = decode_header_mirror(c.residual.header_mirror)
                except (MalformedHeader, ChunkBoundsError):
                    return None
                mirrored = Container.from_header(h, payload=c.payload, residual=c.residual)
                mirrored.header_from_mirror = True
                return mirrored if _chunk_map_consistent(mirrored) else None
            return None

        blob = bytes(self.target)
        try:
            c = decode_container(blob, strict=False)
        except (MalformedHeader, ChunkBoundsError) as exc:
            logger.warning("primary header unreadable (%s); searching for a header mirror", exc)
            c = None
        if c is not None and _chunk_map_consistent(c):
            return c
        if c is not None:
            logger.warning("primary chunk map does not match its Merkle root; searching for a header mirror")
        for _start, end, residual in scan_residuals(blob):
            mirrored = _mirror_container(residual, blob, end)
            if mirrored is not None:
                logger.debug("header rebuilt from mirror in residual block ending at %d", end)
                return mirrored
        return None

    # substitution

    def _substitute(self, index: int, data: bytes, source: str) -> bool:
        chunk = self.container.chunks[index]
        with self._lock:
            if index not in self.missing:
                return False
            self._enter(RegenState.SUBSTITUTING)
            self.buffer[chunk.offset : chunk.end] = data
            self.missing.discard(index)
            self.sources[index] = source
            self.confidence_trace.append(self.confidence)
            self._enter(RegenState.MATCHING)
        logger.debug("chunk %d regenerated from %s", index, source)
        return True

    def _verified(self, index: int, data: bytes) -> bool:
        chunk = self.container.chunks[index]
        return len(data) == chunk.length and chunk_hash(data) == chunk.hash

    # matching

    def _match_parity(self) -> int:
        c = self.container
        residual = c.residual
        if residual is None or residual.parity.is_empty() or not self.missing:
            return 0
        ps = residual.parity
        if ps.chunk_count != c.chunk_count or any(ch.length > ps.symbol_size for ch in c.chunks):
            logger.warning("residual parity does not fit this chunk map; skipped")
            return 0
        with self._lock:
            missing = sorted(self.missing)
            available = {
                ch.index: bytes(self.buffer[ch.offset : ch.end]) for ch in c.chunks if ch.index not in self.missing
            }
        solved = reconstruct(ps, available, missing, lengths={i: c.chunks[i].length for i in missing})
        count = 0
        for index, data in sorted(solved.items()):
            if self._verified(index, data) and self._substitute(index, data, SOURCE_PARITY):
                count += 1
            elif index in self.missing:
                logger.debug("parity candidate for chunk %d failed its hash check", index)
        return count

    def _load_sibling(self, sibling: SiblingInput) -> Optional[Container]:
        if isinstance(sibling, Container):
            return sibling
        try:
            return decode_container(bytes(sibling), strict=False)
        except (MalformedHeader, ChunkBoundsError) as exc:
            logger.warning("sibling skipped: %s", exc)
            return None

    def _scan_sibling(self, position: int, sibling: SiblingInput) -> int:
        if self.cancel.is_set():
            return 0
        sib = self._load_sibling(sibling)
        if sib is None:
            return 0
        with self._lock:
            wanted: Dict[bytes, List[int]] = {}
            for i in self.missing:
                wanted.setdefault(self.container.chunks[i].hash, []).append(i)
        if not wanted:
            return 0
        candidates: Dict[bytes, List[Chunk]] = {}
        for sc in sib.chunks:
            if sc.hash in wanted:
                candidates.setdefault(sc.hash, []).append(sc)
        source = f"sibling[{position}]"
        count = 0
        for h, indices in wanted.items():
            for i in indices:
                target_score = self.container.chunks[i].entropy_score
                ranked = sorted(candidates.get(h, ()), key=lambda sc: abs(sc.entropy_score - target_score))
                for sc in ranked:
                    piece = sib.payload[sc.offset : sc.end]
                    if self._verified(i, piece):
                        if self._substitute(i, piece, source):
                            count += 1
                        break
        return count

    def _match_siblings(self) -> int:
        if not self.siblings or not self.missing:
            return 0
        workers = min(default_jobs(self.jobs), len(self.siblings))
        total = 0
        with _fut.ThreadPoolExecutor(max_workers=workers) as ex:
            futures = [ex.submit(self._scan_sibling, pos, sib) for pos, sib in enumerate(self.siblings)]
            for fut in _fut.as_completed(futures):
                if fut.cancelled():
                    continue
                total += fut.result()
                if self.cancel.is_set() or not self.missing:
                    for pending in futures:
                        pending.cancel()
        return total

    # driver

    def run(self) -> Outcome:
        self._enter(RegenState.SCANNING)
        self.container = self._scan()
        if self.container is None:
            self._enter(RegenState.FAILED)
            return Failed("chunk map unrecoverable: header corrupt and no valid mirror", 0.0, [])
        c = self.container
        self.buffer = bytearray(c.payload_length)
        present = c.payload[: c.payload_length]
        self.buffer[: len(present)] = present
        self.missing = set(failing_chunks(c.payload, c.chunks, jobs=self.jobs))
        for i in self.missing:
            ch = c.chunks[i]
            self.buffer[ch.offset : ch.end] = bytes(ch.length)
        self.confidence_trace.append(self.confidence)
        logger.debug("scan found %d of %d chunk(s) missing", len(self.missing), c.chunk_count)

        if self.missing:
            self._enter(RegenState.MATCHING)
            self._match_parity()
            if self.missing and not self.cancel.is_set():
                if self._match_siblings() and self.missing:
                    # sibling hits can turn multi-erasure stripes into solvable ones
                    self._match_parity()

        if self.missing:
            self._enter(RegenState.PARTIAL_RECOVERY)
            missing = sorted(self.missing)
            resolved = [ch for ch in c.chunks if ch.index not in self.missing]
            logger.warning(
                "partial recovery: %d of %d chunk(s) unresolved, confidence %.3f",
                len(missing),
                c.chunk_count,
                self.confidence,
            )
            return PartialRecovery(
                confidence=self.confidence,
                missing_chunks=missing,
                recovered_ranges=_merge_ranges(resolved),
                payload=bytes(self.buffer),
                sources=dict(self.sources),
                confidence_trace=list(self.confidence_trace),
                cancelled=self.cancel.is_set(),
            )

        self._enter(RegenState.REASSEMBLING)
        payload = bytes(self.buffer)
        error: Optional[Exception] = None
        for h, from_mirror in self._header_candidates(c):
            rebuilt = Container.from_header(h, payload=payload, residual=c.residual)
            rebuilt.header_from_mirror = from_mirror
            try:
                data = verified_data(rebuilt, password=self.password, jobs=self.jobs)
            except (IntegrityError, MalformedHeader, AccessDenied) as exc:
                logger.debug("reassembly with %s header failed: %s", "mirrored" if from_mirror else "primary", exc)
                error = exc
                continue
            self._enter(RegenState.RECOVERED)
            return Recovered(
                data=data,
                container=rebuilt,
                confidence=1.0,
                sources=dict(self.sources),
                confidence_trace=list(self.confidence_trace),
            )
        self._enter(RegenState.FAILED)
        logger.warning("reassembled container failed verification: %s", error)
        return Failed(f"reassembled container failed verification: {error}", self.confidence, list(self.confidence_trace))

    def _header_candidates(self, c: Container) -> List[Tuple[HeaderFields, bool]]:
        """Header fields to reassemble with: a differing mirror first, then the primary."""
        primary = c.header()
        candidates = [(primary, c.header_from_mirror)]
        mirror_raw = c.residual.header_mirror if c.residual is not None else None
        if mirror_raw is None or c.header_from_mirror or mirror_raw == encode_header(primary):
            return candidates
        try:
            mirror = decode_header_mirror(mirror_raw)
        except (MalformedHeader, ChunkBoundsError) as exc:
            logger.debug("header mirror unreadable: %s", exc)
            return candidates
        # the buffer is laid out by the primary chunk map; a mirror is only usable if it agrees
        if mirror.chunks != primary.chunks or mirror.merkle_root != primary.merkle_root:
            logger.debug("header mirror describes a different chunk map; ignored")
            return candidates
        logger.debug("primary header differs from its mirror; trying the mirror first")
        return [(mirror, True)] + candidates


def regenerate(
    container_or_blob: Union[Container, bytes],
    siblings: Sequence[SiblingInput] = (),
    *,
    password: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
    jobs: Optional[int] = None,
) -> Outcome:
    """Regenerate a damaged container; see :class:`RegenerationEngine`.

    Raises:
        PasswordRequired: the container is keyed and no password was given.
    """
    return RegenerationEngine(container_or_blob, siblings, password=password, cancel=cancel, jobs=jobs).run()
