"""Seed derivation and the seed envelope carried in container metadata.

The seed that drives ChaosRegen is derived from the file digest (and, for keyed
containers, the access key). It is never stored in plaintext: containers carry
it sealed with XChaCha20-Poly1305 under either a password-derived key or, for
open containers, a key bound to the container's own integrity fields.
"""

from __future__ import annotations

import hashlib
import struct
from typing import Optional, Tuple

from .constants import SEED_SIZE
from .encryption import EncryptionContext, EncryptionParams, SALT_SIZE, derive_access_key
from .errors import AccessDenied, PasswordRequired


_KDF_STRUCT = struct.Struct("<16sIII")
_SEED_AAD = b"SIGIL-SEED"


def file_digest(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=64).digest()


def derive_seed(data: bytes, access_key: Optional[bytes] = None) -> bytes:
    """Deterministic 32-byte seed; any change to ``data`` yields an unrelated seed."""
    return hashlib.blake2b(
        b"SIGIL-SEED" + file_digest(data),
        digest_size=SEED_SIZE,
        key=access_key or b"",
    ).digest()


def derive_salt(data: bytes) -> bytes:
    # Content-bound salt keeps keyed containers reproducible for identical input.
    return hashlib.blake2s(b"SIGIL-SALT" + file_digest(data), digest_size=SALT_SIZE).digest()


def pack_kdf_params(params: EncryptionParams) -> bytes:
    return _KDF_STRUCT.pack(params.salt, params.time_cost, params.memory_cost_kib, params.parallelism)


def unpack_kdf_params(raw: bytes) -> EncryptionParams:
    if len(raw) != _KDF_STRUCT.size:
        raise ValueError("KDF parameter block has the wrong size")
    salt, time_cost, memory_cost_kib, parallelism = _KDF_STRUCT.unpack(raw)
    return EncryptionParams(salt=salt, time_cost=time_cost, memory_cost_kib=memory_cost_kib, parallelism=parallelism)


def keyed_material(data: bytes, password: str) -> Tuple[bytes, EncryptionParams]:
    """Return (access_key, kdf params) for a keyed container over ``data``."""
    params = EncryptionParams(salt=derive_salt(data))
    return derive_access_key(password, params), params


def open_envelope_key(merkle_root: bytes, original_length: int, checksum: int) -> bytes:
    return hashlib.blake2s(
        b"SIGIL-OPEN" + merkle_root + struct.pack("<QI", original_length, checksum),
        digest_size=32,
    ).digest()


def seal_seed(seed: bytes, envelope_key: bytes, merkle_root: bytes) -> bytes:
    ctx = EncryptionContext(envelope_key)
    return ctx.encrypt(_SEED_AAD, seed, nonce_material=merkle_root)


def open_seed(envelope: bytes, envelope_key: bytes) -> bytes:
    seed = EncryptionContext(envelope_key).decrypt(_SEED_AAD, envelope)
    if len(seed) != SEED_SIZE:
        raise AccessDenied("Seed envelope holds a seed of unexpected size")
    return seed


def recover_seed(
    envelope: bytes,
    *,
    kdf_raw: Optional[bytes],
    merkle_root: bytes,
    original_length: int,
    checksum: int,
    password: Optional[str] = None,
) -> bytes:
    """Open a container's seed envelope, deriving the right envelope key."""
    if kdf_raw:
        if not password:
            raise PasswordRequired("Container is keyed; password required")
        key = derive_access_key(password, unpack_kdf_params(kdf_raw))
    else:
        key = open_envelope_key(merkle_root, original_length, checksum)
    return open_seed(envelope, key)
