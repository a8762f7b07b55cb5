from __future__ import annotations

import unittest

from sigil.signing import (
    SIGNATURE_SIZE,
    export_private_key,
    export_public_key,
    generate_signing_key,
    sign_container,
    verify_container_signature,
)
from sigil.writer import create


class SignatureTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.key = generate_signing_key()
        cls.container = create(b"signed payload " * 64, chunk_size=256)

    def test_sign_and_verify(self):
        sig = sign_container(self.container, self.key)
        self.assertEqual(len(sig), SIGNATURE_SIZE)
        pub = export_public_key(self.key)
        self.assertTrue(verify_container_signature(self.container, sig, pub))
        self.assertTrue(verify_container_signature(self.container.to_bytes(), sig, pub))

    def test_pem_roundtrip(self):
        pem = export_private_key(self.key)
        sig = sign_container(self.container, pem)
        self.assertTrue(verify_container_signature(self.container, sig, self.key.public_key()))

    def test_tampered_blob_or_signature(self):
        sig = sign_container(self.container, self.key)
        blob = bytearray(self.container.to_bytes())
        blob[-1] ^= 0x01
        pub = self.key.public_key()
        self.assertFalse(verify_container_signature(bytes(blob), sig, pub))
        self.assertFalse(verify_container_signature(self.container, sig[:-1], pub))
        bad = bytes([sig[0] ^ 0x01]) + sig[1:]
        self.assertFalse(verify_container_signature(self.container, bad, pub))


if __name__ == "__main__":
    unittest.main()
