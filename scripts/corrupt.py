from __future__ import annotations

import argparse
import os
import random
import sys
from typing import Optional

from sigil.container import Container, decode_container
from sigil.errors import SigilError


def _load(path: str) -> tuple[bytes, Container]:
    with open(path, "rb") as f:
        blob = f.read()
    return blob, decode_container(blob, strict=False)


def _payload_offset(blob: bytes, container: Container) -> int:
    if container.payload_truncated:
        raise ValueError("Container payload is already truncated")
    return len(blob) - len(container.payload)


def _flip_byte(path: str, offset: int, xor_val: int = 0xFF) -> None:
    if offset < 0:
        raise ValueError("Offset must be non-negative")
    with open(path, "r+b") as f:
        f.seek(offset)
        b = f.read(1)
        if not b:
            raise ValueError("Offset beyond end of file")
        f.seek(offset)
        f.write(bytes([b[0] ^ (xor_val & 0xFF)]))
        f.flush()
        os.fsync(f.fileno())


def cmd_by_offset(args: argparse.Namespace) -> None:
    _flip_byte(args.container, args.offset, xor_val=args.xor)
    print(f"Flipped 1 byte at offset {args.offset}")


def cmd_chunk(args: argparse.Namespace) -> None:
    blob, c = _load(args.container)
    for idx in args.index:
        if idx < 0 or idx >= c.chunk_count:
            raise ValueError(f"Chunk index out of range (0..{c.chunk_count - 1})")
        chunk = c.chunks[idx]
        if args.within < 0 or args.within >= chunk.length:
            raise ValueError(f"--within must be within chunk length (0..{chunk.length - 1})")
        off = _payload_offset(blob, c) + chunk.offset + args.within
        _flip_byte(args.container, off, xor_val=args.xor)
        print(f"Flipped 1 byte in chunk {idx} at container offset {off}")


def cmd_truncate(args: argparse.Namespace) -> None:
    blob, c = _load(args.container)
    if args.chunk < 0 or args.chunk >= c.chunk_count:
        raise ValueError(f"Chunk index out of range (0..{c.chunk_count - 1})")
    cut = _payload_offset(blob, c) + c.chunks[args.chunk].offset
    with open(args.container, "r+b") as f:
        f.truncate(cut)
    print(f"Truncated container at offset {cut} (start of chunk {args.chunk})")


def cmd_random(args: argparse.Namespace) -> None:
    rng = random.Random(args.seed)
    flips = 0
    size = os.path.getsize(args.container)
    with open(args.container, "r+b") as f:
        for _ in range(args.count):
            pos = rng.randrange(0, size)
            f.seek(pos)
            b = f.read(1)
            if not b:
                continue
            f.seek(pos)
            f.write(bytes([b[0] ^ (args.xor & 0xFF)]))
            flips += 1
        f.flush()
        os.fsync(f.fileno())
    print(f"Flipped {flips} byte(s) at random offsets")


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(prog="sigil.corrupt", description="Damage Sigil containers for regeneration testing")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_off = sub.add_parser("by-offset", help="Flip one byte at an absolute container offset")
    p_off.add_argument("container", help="Path to .sg1 container")
    p_off.add_argument("--offset", type=int, required=True, help="Absolute byte offset in container")
    p_off.add_argument("--xor", type=lambda x: int(x, 0), default=0xFF, help="XOR mask to apply (default 0xFF)")
    p_off.set_defaults(func=cmd_by_offset)

    p_chunk = sub.add_parser("chunk", help="Flip a byte within one or more payload chunks")
    p_chunk.add_argument("container", help="Path to .sg1 container")
    p_chunk.add_argument("--index", type=int, action="append", required=True, help="Chunk index (repeatable)")
    p_chunk.add_argument("--within", type=int, default=10, help="Byte offset within chunk (default 10)")
    p_chunk.add_argument("--xor", type=lambda x: int(x, 0), default=0xFF, help="XOR mask to apply (default 0xFF)")
    p_chunk.set_defaults(func=cmd_chunk)

    p_trunc = sub.add_parser("truncate", help="Cut the container at the start of a chunk")
    p_trunc.add_argument("container", help="Path to .sg1 container")
    p_trunc.add_argument("--chunk", type=int, required=True, help="First chunk to drop")
    p_trunc.set_defaults(func=cmd_truncate)

    p_rand = sub.add_parser("random", help="Flip N random bytes anywhere in the container")
    p_rand.add_argument("container", help="Path to .sg1 container")
    p_rand.add_argument("--count", type=int, default=1, help="Number of random byte flips (default 1)")
    p_rand.add_argument("--seed", type=int, default=None, help="PRNG seed for reproducibility")
    p_rand.add_argument("--xor", type=lambda x: int(x, 0), default=0xFF, help="XOR mask to apply (default 0xFF)")
    p_rand.set_defaults(func=cmd_random)

    args = ap.parse_args(argv)
    try:
        args.func(args)
    except (SigilError, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
