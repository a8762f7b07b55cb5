from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from . import tlv
from .chunker import Chunk, ChildContainerRoot, RawBytes
from .constants import (
    CONTAINER_MAGIC,
    CONTAINER_VERSION,
    HASH_SIZE,
    KIND_FILE,
    KIND_FOLDER,
    META_CHUNK_SIZE,
    META_KIND,
    META_TIER,
    TIER_NONE,
)
from .errors import ChunkBoundsError, MalformedHeader, ResidualError
from .residual import Residual, decode_residual, encode_residual

_PREAMBLE = struct.Struct("<4sB")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_FIXED = struct.Struct("<QII")  # original_length, checksum, chunk_count
_CHUNK_ENTRY = struct.Struct("<QI32sd")

ChunkRef = Union[RawBytes, ChildContainerRoot]


@dataclass
class HeaderFields:
    """Everything between the magic and the residual block."""
    version: int
    metadata: Dict[str, tlv.MetaValue]
    original_length: int
    checksum: int
    chunks: List[Chunk]
    merkle_root: bytes


@dataclass
class Container:
    metadata: Dict[str, tlv.MetaValue]
    original_length: int
    checksum: int
    chunks: List[Chunk]
    merkle_root: bytes
    payload: bytes
    residual: Optional[Residual] = None
    version: int = CONTAINER_VERSION
    # set by lenient decoding only
    payload_truncated: bool = False
    residual_damaged: bool = False
    header_from_mirror: bool = False
    declared_payload_len: Optional[int] = field(default=None, repr=False)

    @classmethod
    def from_header(cls, h: HeaderFields, payload: bytes = b"", residual: Optional[Residual] = None) -> "Container":
        return cls(
            metadata=h.metadata,
            original_length=h.original_length,
            checksum=h.checksum,
            chunks=h.chunks,
            merkle_root=h.merkle_root,
            payload=payload,
            residual=residual,
            version=h.version,
        )

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    @property
    def kind(self) -> str:
        return str(self.metadata.get(META_KIND, KIND_FILE))

    @property
    def tier(self) -> str:
        return str(self.metadata.get(META_TIER, TIER_NONE))

    @property
    def chunk_size(self) -> int:
        value = self.metadata.get(META_CHUNK_SIZE)
        if isinstance(value, int) and value > 0:
            return value
        return max((c.length for c in self.chunks), default=0)

    @property
    def payload_length(self) -> int:
        return sum(c.length for c in self.chunks)

    def header(self) -> HeaderFields:
        return HeaderFields(
            version=self.version,
            metadata=self.metadata,
            original_length=self.original_length,
            checksum=self.checksum,
            chunks=self.chunks,
            merkle_root=self.merkle_root,
        )

    def chunk_bytes(self, index: int) -> bytes:
        c = self.chunks[index]
        return self.payload[c.offset : c.end]

    def chunk_ref(self, index: int) -> ChunkRef:
        """Tagged reference for chunk ``index``: raw payload bytes or a child container root."""
        c = self.chunks[index]
        if self.kind == KIND_FOLDER:
            return ChildContainerRoot(self.chunk_bytes(index))
        return RawBytes(c.offset, c.length)

    def to_bytes(self) -> bytes:
        return encode_container(self)


def encode_header(h: HeaderFields) -> bytes:
    """Serialize the primary header: magic through Merkle root."""
    if len(h.merkle_root) != HASH_SIZE:
        raise ValueError("merkle root must be 32 bytes")
    meta = tlv.dumps_metadata(h.metadata)
    out = bytearray()
    out += _PREAMBLE.pack(CONTAINER_MAGIC, h.version)
    out += _U32.pack(len(meta)) + meta
    out += _FIXED.pack(h.original_length, h.checksum & 0xFFFFFFFF, len(h.chunks))
    for c in h.chunks:
        out += _CHUNK_ENTRY.pack(c.offset, c.length, c.hash, c.entropy_score)
    out += h.merkle_root
    return bytes(out)


def encode_container(c: Container) -> bytes:
    residual = encode_residual(c.residual) if c.residual is not None else b""
    return b"".join(
        (
            encode_header(c.header()),
            _U32.pack(len(residual)),
            residual,
            _U64.pack(len(c.payload)),
            c.payload,
        )
    )


def check_chunk_map(chunks: List[Chunk], payload_len: Optional[int] = None) -> None:
    """Chunks must be dense from 0, contiguous, non-empty and cover the payload."""
    expect = 0
    for i, c in enumerate(chunks):
        if c.index != i:
            raise ChunkBoundsError(f"chunk index {c.index} out of order at position {i}")
        if c.offset != expect:
            raise ChunkBoundsError(f"chunk {i} starts at {c.offset}, expected {expect}")
        if c.length <= 0:
            raise ChunkBoundsError(f"chunk {i} has zero length")
        expect = c.end
    if payload_len is not None and expect != payload_len:
        raise ChunkBoundsError(f"chunk map covers {expect} bytes, payload declares {payload_len}")


def _need(blob: bytes, pos: int, n: int, what: str) -> None:
    if pos + n > len(blob):
        raise MalformedHeader(f"truncated {what}")


def parse_header(blob: bytes, pos: int = 0, *, strict: bool = True) -> Tuple[HeaderFields, int]:
    """Parse magic through Merkle root starting at ``pos``; return fields and end offset.

    Chunk map contiguity is only enforced when ``strict``; a lenient parse keeps
    the entries as stored so verification can name what is wrong with them.
    """
    _need(blob, pos, _PREAMBLE.size, "preamble")
    magic, version = _PREAMBLE.unpack_from(blob, pos)
    if magic != CONTAINER_MAGIC:
        raise MalformedHeader("Bad magic; not a Sigil container")
    if version != CONTAINER_VERSION:
        raise MalformedHeader(f"Unsupported container version: {version}")
    pos += _PREAMBLE.size
    _need(blob, pos, _U32.size, "metadata length")
    (meta_len,) = _U32.unpack_from(blob, pos)
    pos += _U32.size
    _need(blob, pos, meta_len, "metadata")
    try:
        metadata = tlv.loads_metadata(blob[pos : pos + meta_len])
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedHeader(f"metadata unreadable: {exc}") from exc
    pos += meta_len
    _need(blob, pos, _FIXED.size, "length/checksum fields")
    original_length, checksum, chunk_count = _FIXED.unpack_from(blob, pos)
    pos += _FIXED.size
    if chunk_count * _CHUNK_ENTRY.size > len(blob) - pos:
        raise MalformedHeader(f"chunk count {chunk_count} exceeds available bytes")
    chunks: List[Chunk] = []
    for i in range(chunk_count):
        off, ln, h, entropy = _CHUNK_ENTRY.unpack_from(blob, pos)
        chunks.append(Chunk(index=i, offset=off, length=ln, hash=h, entropy_score=entropy))
        pos += _CHUNK_ENTRY.size
    _need(blob, pos, HASH_SIZE, "merkle root")
    root = blob[pos : pos + HASH_SIZE]
    pos += HASH_SIZE
    if strict:
        check_chunk_map(chunks)
    return HeaderFields(version, metadata, original_length, checksum, chunks, root), pos


def decode_header_mirror(mirror: bytes) -> HeaderFields:
    fields, end = parse_header(mirror, 0)
    if end != len(mirror):
        raise MalformedHeader("header mirror has trailing bytes")
    return fields


def _forward_parts(h: HeaderFields, blob: bytes, pos: int, *, strict: bool) -> Tuple[Container, bool]:
    """Read the tail fields in order; the flag says whether both length fields held up."""
    container = Container.from_header(h)
    expected_payload = sum(c.length for c in h.chunks)
    if pos + _U32.size > len(blob):
        if strict:
            raise MalformedHeader("truncated residual length")
        container.payload_truncated = expected_payload > 0
        return container, False
    (res_len,) = _U32.unpack_from(blob, pos)
    pos += _U32.size
    consistent = True
    if res_len:
        raw = blob[pos : pos + res_len]
        if len(raw) < res_len:
            if strict:
                raise MalformedHeader("truncated residual block")
            container.residual_damaged = True
            container.payload_truncated = expected_payload > 0
            return container, False
        try:
            container.residual = decode_residual(raw, strict=strict)
        except ResidualError:
            if strict:
                raise
            container.residual_damaged = True
            consistent = False
        else:
            container.residual_damaged = not container.residual.body_intact
        pos += res_len
    if pos + _U64.size > len(blob):
        if strict:
            raise MalformedHeader("truncated payload length")
        container.payload_truncated = expected_payload > 0
        return container, False
    (payload_len,) = _U64.unpack_from(blob, pos)
    pos += _U64.size
    container.declared_payload_len = payload_len
    if payload_len != expected_payload:
        if strict:
            raise ChunkBoundsError(f"chunk map covers {expected_payload} bytes, payload declares {payload_len}")
        # chunk map wins; the length field may be the damaged part
        payload_len = expected_payload
        consistent = False
    payload = blob[pos : pos + payload_len]
    if len(payload) < payload_len:
        if strict:
            raise MalformedHeader("truncated payload")
        container.payload_truncated = True
    elif strict and pos + payload_len != len(blob):
        raise MalformedHeader("trailing bytes after payload")
    container.payload = payload
    return container, consistent


def _tail_anchored_parts(h: HeaderFields, blob: bytes, residual_start: int) -> Optional[Container]:
    """Place the payload at the end of ``blob`` and the residual between header and payload length.

    Accepted only if the payload length field before that payload matches the
    chunk map or the bytes in between decode as a residual block.
    """
    expected_payload = sum(c.length for c in h.chunks)
    payload_start = len(blob) - expected_payload
    length_pos = payload_start - _U64.size
    if length_pos < residual_start:
        return None
    (declared,) = _U64.unpack_from(blob, length_pos)
    raw = blob[residual_start:length_pos]
    residual = None
    if raw:
        try:
            residual = decode_residual(raw, strict=False)
        except ResidualError:
            residual = None
    if declared != expected_payload and residual is None:
        return None
    container = Container.from_header(h, payload=blob[payload_start:], residual=residual)
    container.residual_damaged = bool(raw) and (residual is None or not residual.body_intact)
    container.declared_payload_len = declared
    return container


def container_from_parts(h: HeaderFields, blob: bytes, pos: int, *, strict: bool) -> Container:
    """Read ``residual_len || residual || payload_len || payload`` after a parsed header.

    When a lenient read finds the length fields inconsistent, the payload is
    located from the end of the blob instead, since the chunk map fixes its size.
    """
    container, consistent = _forward_parts(h, blob, pos, strict=strict)
    if strict or consistent:
        return container
    anchored = _tail_anchored_parts(h, blob, pos + _U32.size)
    return anchored if anchored is not None else container


def container_from_mirror(h: HeaderFields, residual: Residual, blob: bytes, residual_end: int) -> Container:
    """Rebuild a container around a header mirror found at ``blob[..residual_end]``.

    The payload length field is skipped; the mirrored chunk map says how long
    the payload must be.
    """
    container = Container.from_header(h, residual=residual)
    container.header_from_mirror = True
    container.residual_damaged = not residual.body_intact
    expected = container.payload_length
    start = residual_end + _U64.size
    container.payload = blob[start : start + expected]
    container.payload_truncated = len(container.payload) < expected
    return container


def decode_container(blob: bytes, *, strict: bool = True) -> Container:
    """Parse a container blob.

    Strict decoding rejects any truncation or inconsistency. Lenient decoding
    keeps whatever parses after the header and flags the rest
    (``payload_truncated``, ``residual_damaged``) for the regeneration engine.
    A header that cannot be parsed raises :class:`MalformedHeader` either way.
    """
    h, pos = parse_header(blob, 0, strict=strict)
    return container_from_parts(h, blob, pos, strict=strict)
