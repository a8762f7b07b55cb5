from __future__ import annotations

import os
import sys
import argparse
import json as _json
import logging
import getpass as _getpass
import concurrent.futures as _fut

from typing import Any, Callable, Dict, Iterable, List, Optional

from sigil.constants import CODEC_NAMES, CONTAINER_SUFFIX, DEFAULT_CHUNK_SIZE, DEFAULT_TIER, TIER_IDS
from sigil.container import decode_container
from sigil.errors import PasswordRequired, SigilError
from sigil.reader import ContainerReader, Invalid, describe, verify
from sigil.regen import PartialRecovery, Recovered, regenerate
from sigil.siblings import ChunkIndex
from sigil.tree import create_tree, extract_tree, load_tree, verify_tree, write_tree
from sigil.writer import create, write_container

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_ERROR = 2
EXIT_PARTIAL = 3
EXIT_FAILED = 4


def _iter_containers(paths: Iterable[str], recursive: bool = False) -> Iterable[str]:
    """Yield container paths from a list of files and/or directories.

    Args:
        paths: Paths to scan (files or directories).
        recursive: When True, traverse directories recursively.
    """
    for p in paths:
        if os.path.isdir(p):
            if recursive:
                for root, _dirs, files in os.walk(p):
                    for fn in sorted(files):
                        if fn.lower().endswith(CONTAINER_SUFFIX):
                            yield os.path.join(root, fn)
            else:
                for fn in sorted(os.listdir(p)):
                    if fn.lower().endswith(CONTAINER_SUFFIX):
                        yield os.path.join(p, fn)
        else:
            yield p


def _next_nonconflicting_path(path: str) -> str:
    if not os.path.exists(path):
        return path
    base_dir = os.path.dirname(path)
    root, ext = os.path.splitext(os.path.basename(path))
    i = 1
    while True:
        candidate = os.path.join(base_dir, f"{root} ({i}){ext}")
        if not os.path.exists(candidate):
            return candidate
        i += 1


def _parse_meta(items: Optional[List[str]]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"--meta expects key=value, got {item!r}")
        meta[key] = value
    return meta


def _read(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _with_password(fn: Callable[[Optional[str]], int], password: Optional[str]) -> int:
    """Run ``fn(password)``; prompt once if a keyed container needs a password."""
    try:
        return fn(password)
    except PasswordRequired:
        if password is not None or not sys.stdin.isatty():
            raise
        return fn(_getpass.getpass("Container password: "))


def cmd_seal(
    inputs: List[str],
    *,
    output: Optional[str] = None,
    outdir: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    tier: str = DEFAULT_TIER,
    codec: str = "zstd",
    password: Optional[str] = None,
    meta: Optional[List[str]] = None,
    lineage: Optional[str] = None,
    jobs: int = 4,
    quiet: bool = False,
) -> int:
    """Seal one or more files into containers.

    Args:
        inputs: Files to seal.
        output: Output path (single input only). Defaults to ``<input>.sg1``.
        outdir: Directory for outputs when sealing several files.
        chunk_size: Payload chunk size in bytes.
        tier: Resilience tier: none, reflection or seal.
        codec: Entropy coder: zstd, deflate or stored.
        password: Key the containers with this password.
        meta: ``key=value`` strings stored as user metadata.
        lineage: Parent container whose seed is reused (for sibling chains).
        jobs: Files sealed in parallel.
    """
    if output and len(inputs) > 1:
        raise ValueError("--output only applies to a single input; use --outdir")
    user_meta = _parse_meta(meta)
    parent = _read(lineage) if lineage else None

    def _target(src: str) -> str:
        if output:
            return output
        name = os.path.basename(src) + CONTAINER_SUFFIX
        return os.path.join(outdir, name) if outdir else src + CONTAINER_SUFFIX

    def _one(src: str) -> str:
        container = create(
            src,
            chunk_size=chunk_size,
            tier=tier,
            password=password,
            metadata=user_meta,
            codec=CODEC_NAMES[codec],
            lineage=parent,
        )
        dst = _target(src)
        size = write_container(container, dst)
        return f"  sealed: {src} -> {dst} ({container.chunk_count} chunks, {size} bytes)"

    if outdir:
        os.makedirs(outdir, exist_ok=True)
    with _fut.ThreadPoolExecutor(max_workers=max(1, min(int(jobs), len(inputs)))) as ex:
        for line in ex.map(_one, inputs):
            if not quiet:
                print(line)
    print(f"Sealed {len(inputs)} file(s)")
    return EXIT_OK


def cmd_unseal(
    container: str,
    *,
    output: Optional[str] = None,
    password: Optional[str] = None,
    exists: str = "rename",
) -> int:
    """Extract the original file from a container.

    ``exists`` decides what happens when the destination is already there:
    overwrite, skip, rename (append ' (n)') or fail.
    """
    dst = output
    if dst is None:
        dst = container[: -len(CONTAINER_SUFFIX)] if container.endswith(CONTAINER_SUFFIX) else container + ".out"
    if os.path.exists(dst):
        if exists == "skip":
            print(f"   skipping: {dst}")
            return EXIT_OK
        if exists == "fail":
            raise FileExistsError(f"Destination exists: {dst}")
        if exists == "rename":
            renamed = _next_nonconflicting_path(dst)
            print(f"   renamed to: {renamed}")
            dst = renamed

    def _run(pw: Optional[str]) -> int:
        with ContainerReader(container, password=pw) as r:
            n = r.extract_to(dst)
        print(f"  extracted: {dst} ({n} bytes)")
        return EXIT_OK

    return _with_password(_run, password)


def cmd_verify(
    paths: List[str],
    *,
    password: Optional[str] = None,
    recursive: bool = False,
    jobs: int = 4,
    as_json: bool = False,
) -> int:
    """Verify containers; prints OK/FAIL per container.

    Returns:
        0 when every container is valid, 1 when any is invalid.
    """
    targets = list(_iter_containers(paths, recursive))
    if not targets:
        raise FileNotFoundError("No containers found")

    def _one(p: str) -> Dict[str, Any]:
        try:
            res = _with_password(lambda pw: verify(_read(p), password=pw), password)
        except PasswordRequired:
            raise
        except SigilError as exc:
            return {"path": p, "status": "fail", "reason": str(exc), "failing": []}
        entry: Dict[str, Any] = {"path": p, "status": "ok" if res else "fail"}
        if isinstance(res, Invalid):
            entry["reason"] = str(res)
            entry["failing"] = res.failing
        return entry

    with _fut.ThreadPoolExecutor(max_workers=max(1, int(jobs))) as ex:
        results = list(ex.map(_one, targets))
    failed = sum(1 for r in results if r["status"] != "ok")
    if as_json:
        print(_json.dumps({"results": results, "failed": failed}))
    else:
        for r in results:
            if r["status"] == "ok":
                print(f"OK   {r['path']}")
            else:
                print(f"FAIL {r['path']}: {r['reason']}")
    return EXIT_OK if failed == 0 else EXIT_INVALID


def _discover_siblings(target_blob: bytes, sibling_dir: str, exclude: str) -> List[bytes]:
    index = ChunkIndex()
    names: List[str] = []
    for p in _iter_containers([sibling_dir], recursive=True):
        if os.path.abspath(p) == os.path.abspath(exclude):
            continue
        try:
            index.add(p, _read(p))
            names.append(p)
        except SigilError as exc:
            print(f"Warning: skipping {p}: {exc}", file=sys.stderr)
    try:
        target = decode_container(target_blob, strict=False)
    except SigilError:
        # header unreadable: every indexed container is a candidate
        return [index.get(n).to_bytes() for n in names]
    return [index.get(n).to_bytes() for n in index.siblings_of(target)]


def cmd_regenerate(
    container: str,
    *,
    siblings: Optional[List[str]] = None,
    sibling_dir: Optional[str] = None,
    output: Optional[str] = None,
    container_out: Optional[str] = None,
    partial_out: Optional[str] = None,
    password: Optional[str] = None,
    jobs: Optional[int] = None,
) -> int:
    """Regenerate a damaged container from its residual parity and sibling containers.

    Returns:
        0 Recovered, 3 PartialRecovery, 4 Failed.
    """
    blob = _read(container)
    sibs = [_read(p) for p in siblings or []]
    if sibling_dir:
        sibs.extend(_discover_siblings(blob, sibling_dir, container))

    outcome = _with_password(lambda pw: regenerate(blob, sibs, password=pw, jobs=jobs), password)
    if isinstance(outcome, Recovered):
        dst = output or (container[: -len(CONTAINER_SUFFIX)] if container.endswith(CONTAINER_SUFFIX) else container + ".out")
        with open(dst, "wb") as f:
            f.write(outcome.data)
        if container_out:
            write_container(outcome.container, container_out)
        by_parity = sum(1 for s in outcome.sources.values() if s == "parity")
        print(
            f"Recovered: {dst} ({len(outcome.data)} bytes; "
            f"{len(outcome.sources)} chunk(s) regenerated, {by_parity} from parity)"
        )
        return EXIT_OK
    if isinstance(outcome, PartialRecovery):
        if partial_out:
            with open(partial_out, "wb") as f:
                f.write(outcome.payload)
        missing = ", ".join(str(i) for i in outcome.missing_chunks)
        note = " (cancelled)" if outcome.cancelled else ""
        print(f"PartialRecovery{note}: confidence {outcome.confidence:.3f}; missing chunks: {missing}")
        return EXIT_PARTIAL
    print(f"Failed: {outcome.reason}", file=sys.stderr)
    return EXIT_FAILED


def cmd_info(container: str, *, as_json: bool = False) -> int:
    """Show container information."""
    c = decode_container(_read(container), strict=False)
    info = describe(c)
    if as_json:
        info["metadata"] = {k: (v.hex() if isinstance(v, bytes) else v) for k, v in info["metadata"].items()}
        print(_json.dumps(info))
        return EXIT_OK
    print(f"Container: {container}")
    print(f"  Version: {info['version']}")
    print(f"  Kind: {info['kind']}")
    print(f"  Tier: {info['tier']}{' (keyed)' if info['keyed'] else ''}")
    print(f"  Original length: {info['original_length']}")
    print(f"  Checksum (CRC32): {info['checksum']}")
    print(f"  Chunks: {info['chunk_count']} x {info['chunk_size']} bytes")
    print(f"  Payload: {info['payload_length']} bytes ({info['codec']})")
    print(f"  Merkle root: {info['merkle_root']}")
    print(f"  Residual: lrp={info['lrp_stripes']} rx={info['rx_parity']} mirror={'yes' if info['header_mirror'] else 'no'}")
    if c.payload_truncated:
        print("  Warning: payload is truncated")
    for k, v in info["metadata"].items():
        print(f"  {k}: {v.hex() if isinstance(v, bytes) else v}")
    return EXIT_OK


def cmd_tree(
    action: str,
    path: str,
    *,
    outdir: Optional[str] = None,
    tier: str = DEFAULT_TIER,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    password: Optional[str] = None,
) -> int:
    """Seal, verify or unseal a folder tree.

    Args:
        action: ``seal`` (path is a directory), ``verify`` or ``unseal`` (path is a tree directory).
        outdir: Destination for ``seal`` and ``unseal``.
    """
    if action == "seal":
        if not outdir:
            raise ValueError("tree seal needs --outdir")
        folder, children = create_tree(path, tier=tier, chunk_size=chunk_size, password=password)
        dst = write_tree(folder, children, outdir)
        print(f"Sealed {len(children)} file(s); folder container: {dst}")
        return EXIT_OK
    folder, children = load_tree(path)
    if action == "verify":
        report = verify_tree(folder, children, password=password)
        print(f"{'OK' if report.folder else 'FAIL'}   folder ({report.folder if not report.folder else 'valid'})")
        for name, res in sorted(report.children.items()):
            print(f"{'OK' if res else 'FAIL'}   {name}" + ("" if res else f": {res}"))
        for name in report.missing:
            print(f"MISSING {name}")
        return EXIT_OK if report.ok else EXIT_INVALID
    if action == "unseal":
        written = extract_tree(folder, children, outdir or ".", password=password)
        for p in written:
            print(f"  extracted: {p}")
        return EXIT_OK
    raise ValueError(f"Unknown tree action: {action}")


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="sigil",
        description="Sigil .sg1 container tool",
        epilog="Exit codes: 0 ok/recovered, 1 invalid, 2 error, 3 partial recovery, 4 failed.",
    )
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_seal = sub.add_parser("seal", help="Seal files into containers")
    ap_seal.add_argument("inputs", nargs="+", help="Input files")
    ap_seal.add_argument("--output", "-o", help="Output container path (single input)")
    ap_seal.add_argument("--outdir", help="Output directory (several inputs)")
    ap_seal.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help=f"Chunk size in bytes (default {DEFAULT_CHUNK_SIZE})")
    ap_seal.add_argument(
        "--tier",
        choices=sorted(TIER_IDS),
        default=DEFAULT_TIER,
        help="Resilience tier (none: no residual; reflection: LRP 1/8; seal: LRP 1/4 + RX 25%% + header mirror)",
    )
    ap_seal.add_argument("--codec", choices=sorted(CODEC_NAMES), default="zstd", help="Entropy coder (default zstd)")
    ap_seal.add_argument("--password", help="Key the container with this password")
    ap_seal.add_argument("--meta", action="append", metavar="KEY=VALUE", help="User metadata (repeatable)")
    ap_seal.add_argument("--lineage", help="Parent container whose seed is reused")
    ap_seal.add_argument("--jobs", "-j", type=int, default=4, help="Parallel jobs (default 4)")
    ap_seal.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_unseal = sub.add_parser("unseal", help="Extract the original file")
    ap_unseal.add_argument("container", help="Container path")
    ap_unseal.add_argument("--output", "-o", help="Output file path")
    ap_unseal.add_argument("--password", help="Container password")
    ap_unseal.add_argument(
        "--exists",
        choices=["overwrite", "skip", "rename", "fail"],
        default="rename",
        help="What to do if the destination exists (default: rename)",
    )

    ap_verify = sub.add_parser("verify", help="Verify container integrity")
    ap_verify.add_argument("paths", nargs="+", help="Container paths or directories")
    ap_verify.add_argument("--password", help="Container password")
    ap_verify.add_argument("--recursive", "-r", action="store_true", help="Recurse into directories")
    ap_verify.add_argument("--jobs", "-j", type=int, default=4, help="Parallel jobs (default 4)")
    ap_verify.add_argument("--json", action="store_true", help="Emit JSON result summary")

    ap_regen = sub.add_parser("regenerate", help="Regenerate a damaged container")
    ap_regen.add_argument("container", help="Damaged container path")
    ap_regen.add_argument("--sibling", "-s", action="append", dest="siblings", help="Sibling container (repeatable)")
    ap_regen.add_argument("--sibling-dir", help="Directory of candidate siblings, matched by shared chunk hashes")
    ap_regen.add_argument("--output", "-o", help="Where to write the recovered file")
    ap_regen.add_argument("--container-out", help="Also write the repaired container here")
    ap_regen.add_argument("--partial-out", help="On partial recovery, write the partial payload here")
    ap_regen.add_argument("--password", help="Container password")
    ap_regen.add_argument("--jobs", "-j", type=int, help="Concurrent sibling scans")

    ap_info = sub.add_parser("info", help="Show container information")
    ap_info.add_argument("container", help="Container path")
    ap_info.add_argument("--json", action="store_true", help="Emit JSON")

    ap_tree = sub.add_parser("tree", help="Folder containers")
    ap_tree.add_argument("action", choices=["seal", "verify", "unseal"])
    ap_tree.add_argument("path", help="Source directory (seal) or tree directory (verify/unseal)")
    ap_tree.add_argument("--outdir", help="Destination directory")
    ap_tree.add_argument("--tier", choices=sorted(TIER_IDS), default=DEFAULT_TIER)
    ap_tree.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    ap_tree.add_argument("--password", help="Container password")

    args = ap.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    try:
        if args.cmd == "seal":
            code = cmd_seal(
                args.inputs,
                output=args.output,
                outdir=args.outdir,
                chunk_size=args.chunk_size,
                tier=args.tier,
                codec=args.codec,
                password=args.password,
                meta=args.meta,
                lineage=args.lineage,
                jobs=args.jobs,
                quiet=args.quiet,
            )
        elif args.cmd == "unseal":
            code = cmd_unseal(args.container, output=args.output, password=args.password, exists=args.exists)
        elif args.cmd == "verify":
            code = cmd_verify(args.paths, password=args.password, recursive=args.recursive, jobs=args.jobs, as_json=args.json)
        elif args.cmd == "regenerate":
            code = cmd_regenerate(
                args.container,
                siblings=args.siblings,
                sibling_dir=args.sibling_dir,
                output=args.output,
                container_out=args.container_out,
                partial_out=args.partial_out,
                password=args.password,
                jobs=args.jobs,
            )
        elif args.cmd == "info":
            code = cmd_info(args.container, as_json=args.json)
        elif args.cmd == "tree":
            code = cmd_tree(
                args.action,
                args.path,
                outdir=args.outdir,
                tier=args.tier,
                chunk_size=args.chunk_size,
                password=args.password,
            )
        else:
            raise RuntimeError("Unknown command")
    except PasswordRequired:
        print("Error: Container is keyed. Provide --password.", file=sys.stderr)
        sys.exit(EXIT_ERROR)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)
    except (SigilError, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)
    sys.exit(code)


if __name__ == "__main__":
    main()
