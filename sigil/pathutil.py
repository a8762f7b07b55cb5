from __future__ import annotations

import os
from pathlib import Path
from typing import Union


def norm_path(name: str) -> str:
    """Canonical child name for a folder container entry.

    Backslashes become slashes, empty and "." segments are dropped. A name
    containing ".." or reducing to nothing is rejected with ValueError.
    """
    segments = []
    for seg in name.replace("\\", "/").split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            raise ValueError(f"Child name may not contain '..': {name!r}")
        segments.append(seg)
    if not segments:
        raise ValueError(f"Child name is empty: {name!r}")
    return "/".join(segments)


def safe_join(root: Union[str, os.PathLike], name: str) -> Path:
    """Join a normalized child name under ``root``; the result never leaves ``root``."""
    base = Path(root).resolve()
    target = (base / norm_path(name)).resolve()
    if target != base and base not in target.parents:
        raise ValueError(f"Path escapes output directory: {name}")
    return target
