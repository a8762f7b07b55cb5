from __future__ import annotations

from typing import Optional, Sequence


class SigilError(Exception):
    """Base class for Sigil-specific errors."""


# Structure
class MalformedHeader(SigilError):
    """Magic/version mismatch or a header that cannot be parsed. Not retried."""


class ChunkBoundsError(SigilError):
    pass


class ResidualError(SigilError):
    pass


# Streams
class CorruptStream(SigilError):
    """Entropy-decode or inverse-transform failure; regeneration may route around it."""


# Integrity
class IntegrityError(SigilError):
    pass


class ChecksumMismatch(IntegrityError):
    pass


class MerkleMismatch(IntegrityError):
    pass


class ChunkHashMismatch(IntegrityError):
    def __init__(self, index: int, failing: Optional[Sequence[int]] = None):
        self.index = index
        self.failing = list(failing) if failing is not None else [index]
        super().__init__(f"chunk hash mismatch at chunk {index}")


class InsufficientRedundancy(SigilError):
    def __init__(self, missing: Sequence[int]):
        self.missing = list(missing)
        super().__init__(f"{len(self.missing)} chunk(s) could not be regenerated: {self.missing}")


# Access
class PasswordRequired(SigilError):
    pass


class AccessDenied(SigilError):
    pass
