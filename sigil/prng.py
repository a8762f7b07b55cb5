from __future__ import annotations

import hashlib


class DeterministicPRNG:
    """Deterministic pseudo-random byte generator based on BLAKE2b."""

    def __init__(self, seed_base: bytes, seed_id: int = 0):
        self.seed_base = seed_base
        self.seed_id = seed_id
        self.counter = 0
        self.buffer = b""
        self.pos = 0

    def _refill(self):
        material = self.seed_id.to_bytes(8, "little") + self.counter.to_bytes(8, "little")
        self.buffer = hashlib.blake2b(material, digest_size=64, key=self.seed_base[:64]).digest()
        self.counter += 1
        self.pos = 0

    def next_byte(self) -> int:
        if self.pos >= len(self.buffer):
            self._refill()
        b = self.buffer[self.pos]
        self.pos += 1
        return b

    def read(self, n: int) -> bytes:
        """Return the next ``n`` keystream bytes."""
        out = bytearray()
        while len(out) < n:
            if self.pos >= len(self.buffer):
                self._refill()
            take = min(n - len(out), len(self.buffer) - self.pos)
            out += self.buffer[self.pos : self.pos + take]
            self.pos += take
        return bytes(out)

    def next_uint(self, modulus: int) -> int:
        if modulus <= 0:
            return 0
        # 64-bit rejection sampling for all moduli > 0
        limit = (1 << 64) - ((1 << 64) % modulus)
        while True:
            v = int.from_bytes(self.read(8), "little")
            if v < limit:
                return v % modulus

    def next_unit_float(self) -> float:
        """Uniform float in the open interval (0, 1)."""
        v = int.from_bytes(self.read(7), "little") >> 3  # 53 bits
        return (v + 0.5) / float(1 << 53)

    def next_nonzero_byte(self) -> int:
        while True:
            b = self.next_byte()
            if b != 0:
                return b
