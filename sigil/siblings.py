from __future__ import annotations

import threading
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set, Union

from .container import Container, decode_container


class ChunkIndex:
    """Content-addressed lookup: chunk hash -> names of containers holding it.

    Used to pick siblings before regeneration; the engine itself only ever
    sees the fixed list it is handed.
    """

    def __init__(self):
        self._by_hash: Dict[bytes, Set[str]] = {}
        self._containers: Dict[str, Container] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._containers)

    def __contains__(self, name: str) -> bool:
        return name in self._containers

    def add(self, name: str, container: Union[Container, bytes]) -> None:
        if not isinstance(container, Container):
            container = decode_container(bytes(container), strict=False)
        with self._lock:
            if name in self._containers:
                self._drop(name)
            self._containers[name] = container
            for c in container.chunks:
                self._by_hash.setdefault(c.hash, set()).add(name)

    def remove(self, name: str) -> None:
        with self._lock:
            self._drop(name)

    def _drop(self, name: str) -> None:
        container = self._containers.pop(name, None)
        if container is None:
            return
        for c in container.chunks:
            names = self._by_hash.get(c.hash)
            if names is None:
                continue
            names.discard(name)
            if not names:
                del self._by_hash[c.hash]

    def get(self, name: str) -> Container:
        return self._containers[name]

    def lookup(self, chunk_hash: bytes) -> Set[str]:
        with self._lock:
            return set(self._by_hash.get(chunk_hash, ()))

    def siblings_of(self, container: Container, *, exclude: Optional[Iterable[str]] = None) -> List[str]:
        """Names sharing at least one chunk hash with ``container``, most shared first."""
        skip = set(exclude or ())
        shared: Counter = Counter()
        with self._lock:
            for h in {c.hash for c in container.chunks}:
                for name in self._by_hash.get(h, ()):
                    if name not in skip:
                        shared[name] += 1
        return [name for name, _count in sorted(shared.items(), key=lambda kv: (-kv[1], kv[0]))]

    def sibling_containers(self, container: Container, *, exclude: Optional[Iterable[str]] = None) -> List[Container]:
        return [self._containers[n] for n in self.siblings_of(container, exclude=exclude)]
