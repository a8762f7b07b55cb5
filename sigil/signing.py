"""Ed25519 signatures over sealed containers.

Signatures cover the container bytes as an opaque blob; nothing here looks at
chunks, metadata or the residual block. Key handling is the caller's concern.
"""

from __future__ import annotations

from typing import Union

from Cryptodome.PublicKey import ECC
from Cryptodome.Signature import eddsa

from .container import Container

SIGNATURE_SIZE = 64

KeyLike = Union[ECC.EccKey, bytes, str]


def generate_signing_key() -> ECC.EccKey:
    return ECC.generate(curve="Ed25519")


def load_key(key: KeyLike) -> ECC.EccKey:
    """Accept an ``EccKey`` or a PEM/DER export of one."""
    if isinstance(key, ECC.EccKey):
        return key
    return ECC.import_key(key)


def export_public_key(key: ECC.EccKey) -> str:
    return key.public_key().export_key(format="PEM")


def export_private_key(key: ECC.EccKey) -> str:
    return key.export_key(format="PEM")


def _blob(container: Union[Container, bytes]) -> bytes:
    return container.to_bytes() if isinstance(container, Container) else bytes(container)


def sign_container(container: Union[Container, bytes], key: KeyLike) -> bytes:
    signer = eddsa.new(load_key(key), "rfc8032")
    return signer.sign(_blob(container))


def verify_container_signature(container: Union[Container, bytes], signature: bytes, public_key: KeyLike) -> bool:
    if len(signature) != SIGNATURE_SIZE:
        return False
    verifier = eddsa.new(load_key(public_key), "rfc8032")
    try:
        verifier.verify(_blob(container), signature)
    except ValueError:
        return False
    return True
