"""Folder containers.

A folder is sealed as one file container per regular file plus a folder
container whose payload is the children's Merkle roots, one 32-byte chunk per
child, in sorted name order. Folder payloads are stored raw (no codec byte, no
transform) so every chunk *is* a child root. Child names live in the
``sigil.names`` metadata entry as a TLV list.
"""

from __future__ import annotations

import logging
import os
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

from . import tlv
from .chunker import ChildContainerRoot, split_chunks
from .constants import (
    CONTAINER_SUFFIX,
    DEFAULT_TIER,
    HASH_SIZE,
    KIND_FOLDER,
    META_CHUNK_SIZE,
    META_KIND,
    META_NAMES,
    META_TIER,
    TierConfig,
    resolve_tier,
)
from .container import Container, decode_container
from .errors import MalformedHeader
from .hashutil import merkle_root
from .pathutil import norm_path, safe_join
from .reader import REASON_MERKLE, Invalid, Valid, verified_data, verify
from .writer import build_residual, create, write_container

logger = logging.getLogger(__name__)

FOLDER_FILENAME = "folder" + CONTAINER_SUFFIX
CHILDREN_DIRNAME = "children"


def _pack_names(names: List[str]) -> bytes:
    return b"".join(tlv.tlv(1, n.encode("utf-8")) for n in names)


def _unpack_names(raw: bytes) -> List[str]:
    return [payload.decode("utf-8") for tag, payload in tlv.iter_tlvs(raw) if tag == 1]


def _iter_files(directory: Path) -> List[Tuple[str, Path]]:
    found = []
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames.sort()
        for fn in filenames:
            p = Path(dirpath) / fn
            if p.is_file() and not p.is_symlink():
                found.append((norm_path(p.relative_to(directory).as_posix()), p))
    found.sort(key=lambda item: item[0])
    return found


def folder_container(
    children: Mapping[str, Container],
    *,
    tier: Union[str, TierConfig] = DEFAULT_TIER,
    metadata: Optional[Dict[str, tlv.MetaValue]] = None,
) -> Container:
    """Build the folder container referencing ``children`` by Merkle root."""
    names = sorted(norm_path(n) for n in children)
    by_norm = {norm_path(n): c for n, c in children.items()}
    payload = b"".join(by_norm[n].merkle_root for n in names)
    chunks = split_chunks(payload, HASH_SIZE, jobs=1)
    tier_cfg = tier if isinstance(tier, TierConfig) else resolve_tier(tier)
    meta: Dict[str, tlv.MetaValue] = {
        META_KIND: KIND_FOLDER,
        META_CHUNK_SIZE: HASH_SIZE,
        META_TIER: tier_cfg.name,
        META_NAMES: _pack_names(names),
    }
    meta.update(metadata or {})
    folder = Container(
        metadata=meta,
        original_length=len(payload),
        checksum=zlib.crc32(payload) & 0xFFFFFFFF,
        chunks=chunks,
        merkle_root=merkle_root([c.hash for c in chunks]),
        payload=payload,
    )
    folder.residual = build_residual(folder, tier_cfg, [payload[c.offset : c.end] for c in chunks])
    return folder


def create_tree(directory: Union[str, os.PathLike], **options) -> Tuple[Container, Dict[str, Container]]:
    """Seal every regular file under ``directory`` and the folder that references them.

    ``options`` are passed to :func:`sigil.writer.create` for each file; the
    folder container takes ``tier`` from them.
    """
    root = Path(directory)
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {directory}")
    children: Dict[str, Container] = {}
    for name, path in _iter_files(root):
        children[name] = create(path, **options)
        logger.debug("sealed child %s (%d chunk(s))", name, children[name].chunk_count)
    folder = folder_container(children, tier=options.get("tier", DEFAULT_TIER))
    return folder, children


def child_names(folder: Container) -> List[str]:
    if folder.kind != KIND_FOLDER:
        raise MalformedHeader("container is not a folder container")
    raw = folder.metadata.get(META_NAMES, b"")
    if not isinstance(raw, bytes):
        raise MalformedHeader("folder names entry has the wrong type")
    return _unpack_names(raw)


def child_refs(folder: Container) -> List[Tuple[str, ChildContainerRoot]]:
    """Pair each child name with the root its folder chunk references."""
    names = child_names(folder)
    if len(names) != folder.chunk_count:
        raise MalformedHeader(f"folder lists {len(names)} name(s) for {folder.chunk_count} chunk(s)")
    refs = []
    for i, name in enumerate(names):
        refs.append((name, ChildContainerRoot(folder.chunk_bytes(i))))
    return refs


@dataclass
class TreeVerification:
    folder: Union[Valid, Invalid]
    children: Dict[str, Union[Valid, Invalid]] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.folder) and not self.missing and all(self.children.values())


def _load(c: Union[Container, bytes]) -> Container:
    return c if isinstance(c, Container) else decode_container(bytes(c), strict=False)


def verify_tree(
    folder: Union[Container, bytes],
    children: Mapping[str, Union[Container, bytes]],
    *,
    password: Optional[str] = None,
) -> TreeVerification:
    """Verify the folder container, then each child against the root the folder references."""
    folder = _load(folder)
    report = TreeVerification(folder=verify(folder))
    if not report.folder:
        return report
    for name, ref in child_refs(folder):
        child = children.get(name)
        if child is None:
            report.missing.append(name)
            continue
        child = _load(child)
        if child.merkle_root != ref.root:
            report.children[name] = Invalid(REASON_MERKLE, detail="child root differs from the folder reference")
            continue
        report.children[name] = verify(child, password=password)
    return report


def extract_tree(
    folder: Union[Container, bytes],
    children: Mapping[str, Union[Container, bytes]],
    outdir: Union[str, os.PathLike],
    *,
    password: Optional[str] = None,
) -> List[Path]:
    """Extract every child to ``outdir`` under its recorded name; raises on the first failure."""
    folder = _load(folder)
    verified_data(folder)
    written: List[Path] = []
    for name, ref in child_refs(folder):
        if name not in children:
            raise FileNotFoundError(f"child container missing: {name}")
        child = _load(children[name])
        if child.merkle_root != ref.root:
            raise MalformedHeader(f"child {name} does not match the folder reference")
        data = verified_data(child, password=password)
        dst = safe_join(outdir, name)
        dst.parent.mkdir(parents=True, exist_ok=True)
        with open(dst, "wb") as f:
            f.write(data)
        written.append(dst)
    return written


def write_tree(folder: Container, children: Mapping[str, Container], outdir: Union[str, os.PathLike]) -> Path:
    """Store a sealed tree as ``outdir/folder.sg1`` plus ``outdir/children/<name>.sg1``."""
    out = Path(outdir)
    out.mkdir(parents=True, exist_ok=True)
    for name, child in children.items():
        dst = safe_join(out / CHILDREN_DIRNAME, name + CONTAINER_SUFFIX)
        dst.parent.mkdir(parents=True, exist_ok=True)
        write_container(child, dst)
    dst = out / FOLDER_FILENAME
    write_container(folder, dst)
    return dst


def load_tree(treedir: Union[str, os.PathLike]) -> Tuple[Container, Dict[str, bytes]]:
    """Read a tree written by :func:`write_tree`; children are returned as raw blobs."""
    base = Path(treedir)
    with open(base / FOLDER_FILENAME, "rb") as f:
        folder = decode_container(f.read(), strict=False)
    children: Dict[str, bytes] = {}
    for name in child_names(folder):
        path = safe_join(base / CHILDREN_DIRNAME, name + CONTAINER_SUFFIX)
        if path.is_file():
            with open(path, "rb") as f:
                children[name] = f.read()
    return folder, children
