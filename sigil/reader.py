from __future__ import annotations

import logging
import os
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from . import chaos
from .chunker import failing_chunks
from .codec import decode_stream, stream_codec
from .constants import CODEC_NAMES, KIND_FOLDER, META_KDF, META_SEED, RESERVED_PREFIX
from .container import Container, decode_container
from .errors import (
    AccessDenied,
    ChecksumMismatch,
    ChunkHashMismatch,
    CorruptStream,
    IntegrityError,
    MalformedHeader,
    MerkleMismatch,
)
from .hashutil import merkle_root
from .seed import recover_seed

logger = logging.getLogger(__name__)

REASON_MERKLE = "merkle-root"
REASON_CHUNK = "chunk-hash"
REASON_CHECKSUM = "checksum"


@dataclass(frozen=True)
class Valid:
    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    reason: str
    index: Optional[int] = None
    failing: List[int] = field(default_factory=list)
    detail: str = ""

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        if self.reason == REASON_CHUNK:
            return f"chunk-hash[{self.index}]"
        return self.reason

    def as_error(self) -> IntegrityError:
        if self.reason == REASON_MERKLE:
            return MerkleMismatch(self.detail or "merkle root mismatch")
        if self.reason == REASON_CHUNK:
            return ChunkHashMismatch(self.index if self.index is not None else -1, self.failing)
        return ChecksumMismatch(self.detail or "checksum mismatch")


def _as_container(container: Union[Container, bytes], *, strict: bool) -> Container:
    if isinstance(container, Container):
        return container
    return decode_container(bytes(container), strict=strict)


def container_seed(container: Container, *, password: Optional[str] = None) -> bytes:
    """Open the container's seed envelope (requires the password for keyed containers)."""
    envelope = container.metadata.get(META_SEED)
    if not isinstance(envelope, bytes):
        raise MalformedHeader("container carries no seed envelope")
    kdf_raw = container.metadata.get(META_KDF)
    return recover_seed(
        envelope,
        kdf_raw=kdf_raw if isinstance(kdf_raw, bytes) else None,
        merkle_root=container.merkle_root,
        original_length=container.original_length,
        checksum=container.checksum,
        password=password,
    )


def decode_payload(container: Container, payload: bytes, *, password: Optional[str] = None) -> bytes:
    """Reverse entropy coding and the chaotic transform. Folder payloads are stored raw."""
    if container.kind == KIND_FOLDER:
        return bytes(payload)
    seed = container_seed(container, password=password)
    return chaos.inverse_transform(decode_stream(payload), seed)


def check_structure(container: Container, *, jobs: Optional[int] = None) -> None:
    """Merkle root over stored hashes, then every chunk hash over its byte range."""
    if merkle_root([c.hash for c in container.chunks]) != container.merkle_root:
        raise MerkleMismatch("Merkle root does not match the stored chunk hashes")
    failing = failing_chunks(container.payload, container.chunks, jobs=jobs)
    if failing:
        raise ChunkHashMismatch(failing[0], failing)


def verified_data(container: Container, *, password: Optional[str] = None, jobs: Optional[int] = None) -> bytes:
    """Run every integrity check and return the original bytes.

    Raises:
        MerkleMismatch, ChunkHashMismatch, ChecksumMismatch: a check failed.
        PasswordRequired, AccessDenied: the seed of a keyed container cannot be opened.
    """
    check_structure(container, jobs=jobs)
    keyed = isinstance(container.metadata.get(META_KDF), bytes)
    try:
        data = decode_payload(container, container.payload, password=password)
    except CorruptStream as exc:
        raise ChecksumMismatch(f"payload does not decode: {exc}") from exc
    except AccessDenied as exc:
        if keyed:
            raise
        # the open envelope key is bound to length/checksum; a failure means they were altered
        raise ChecksumMismatch("seed envelope does not open; length or checksum altered") from exc
    if len(data) != container.original_length:
        raise ChecksumMismatch(f"recovered {len(data)} bytes, header says {container.original_length}")
    if zlib.crc32(data) & 0xFFFFFFFF != container.checksum:
        raise ChecksumMismatch("CRC32 of recovered bytes does not match")
    return data


def verify(
    container: Union[Container, bytes],
    *,
    password: Optional[str] = None,
    jobs: Optional[int] = None,
) -> Union[Valid, Invalid]:
    """Check Merkle root, chunk hashes and checksum, in that order.

    Blobs are decoded leniently so a truncated payload is reported as the first
    chunk it cuts off rather than as a header error.
    """
    c = _as_container(container, strict=False)
    try:
        verified_data(c, password=password, jobs=jobs)
    except MerkleMismatch as exc:
        return Invalid(REASON_MERKLE, detail=str(exc))
    except ChunkHashMismatch as exc:
        return Invalid(REASON_CHUNK, index=exc.index, failing=exc.failing, detail=str(exc))
    except ChecksumMismatch as exc:
        return Invalid(REASON_CHECKSUM, detail=str(exc))
    return Valid()


def extract(container: Union[Container, bytes], *, password: Optional[str] = None) -> bytes:
    c = _as_container(container, strict=True)
    return verified_data(c, password=password)


def describe(container: Container) -> Dict[str, Any]:
    codec_id = stream_codec(container.payload) if container.kind != KIND_FOLDER else None
    codec_names = {v: k for k, v in CODEC_NAMES.items()}
    residual = container.residual
    return {
        "version": container.version,
        "kind": container.kind,
        "tier": container.tier,
        "keyed": isinstance(container.metadata.get(META_KDF), bytes),
        "original_length": container.original_length,
        "checksum": f"{container.checksum:08x}",
        "chunk_size": container.chunk_size,
        "chunk_count": container.chunk_count,
        "payload_length": len(container.payload),
        "codec": codec_names.get(codec_id, "none") if codec_id is not None else "none",
        "merkle_root": container.merkle_root.hex(),
        "lrp_stripes": len(residual.parity.stripes) if residual else 0,
        "rx_parity": len(residual.parity.rx) if residual else 0,
        "header_mirror": bool(residual and residual.header_mirror is not None),
        "metadata": {k: v for k, v in container.metadata.items() if not k.startswith(RESERVED_PREFIX)},
    }


class ContainerReader:
    """Open a container file for inspection, verification and extraction."""

    def __init__(self, path: Union[str, os.PathLike], password: Optional[str] = None, *, strict: bool = True):
        self.path = os.fspath(path)
        self.password = password
        self.strict = strict
        self.blob = b""
        self.container: Optional[Container] = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        with open(self.path, "rb") as f:
            self.blob = f.read()
        self.container = decode_container(self.blob, strict=self.strict)
        logger.debug("opened %s: %d chunk(s)", self.path, self.container.chunk_count)

    def close(self):
        self.blob = b""
        self.container = None

    def _require(self) -> Container:
        if self.container is None:
            raise RuntimeError("reader is not open")
        return self.container

    def verify(self, *, jobs: Optional[int] = None) -> Union[Valid, Invalid]:
        return verify(self._require(), password=self.password, jobs=jobs)

    def extract(self) -> bytes:
        return verified_data(self._require(), password=self.password)

    def extract_to(self, dst: Union[str, os.PathLike]) -> int:
        data = self.extract()
        with open(dst, "wb") as f:
            f.write(data)
        return len(data)

    def info(self) -> Dict[str, Any]:
        return describe(self._require())
