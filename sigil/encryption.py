from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from argon2.low_level import Type as ArgonType, hash_secret_raw
from Cryptodome.Cipher import ChaCha20_Poly1305

from .constants import ARGON_MEMORY_COST_KIB, ARGON_PARALLELISM, ARGON_TIME_COST
from .errors import AccessDenied


NONCE_SIZE = 24
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 16


@dataclass
class EncryptionParams:
    salt: bytes
    time_cost: int = ARGON_TIME_COST
    memory_cost_kib: int = ARGON_MEMORY_COST_KIB
    parallelism: int = ARGON_PARALLELISM


def derive_access_key(password: str, params: EncryptionParams) -> bytes:
    """Argon2id key derivation for keyed containers."""
    if len(params.salt) != SALT_SIZE:
        raise ValueError("Argon2 salt must be 16 bytes")
    return hash_secret_raw(
        password.encode("utf-8"),
        params.salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost_kib,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=ArgonType.ID,
    )


class EncryptionContext:
    """XChaCha20-Poly1305 sealing with deterministic, key-bound nonces.

    Nonces are derived from the key and caller supplied nonce material, so the
    same (key, material, plaintext) always seals to the same bytes.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError("Key must be 32 bytes for XChaCha20-Poly1305")
        self.key = key

    def _derive_nonce(self, nonce_material: bytes) -> bytes:
        return hmac.new(self.key, b"SIGIL_NONCE" + nonce_material, hashlib.sha512).digest()[:NONCE_SIZE]

    def encrypt(self, aad: bytes, plaintext: bytes, *, nonce_material: bytes) -> bytes:
        nonce = self._derive_nonce(nonce_material)
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        if aad:
            cipher.update(aad)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return nonce + ciphertext + tag

    def decrypt(self, aad: bytes, payload: bytes) -> bytes:
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise AccessDenied("Encrypted payload too short")
        nonce = payload[:NONCE_SIZE]
        tag = payload[-TAG_SIZE:]
        ciphertext = payload[NONCE_SIZE:-TAG_SIZE]
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        if aad:
            cipher.update(aad)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as exc:
            raise AccessDenied("Authentication failed; wrong key or damaged envelope") from exc
