from __future__ import annotations

import hashlib
import random
import unittest

from sigil import chaos
from sigil.errors import CorruptStream
from sigil.seed import derive_seed


def _seed(i: int) -> bytes:
    return hashlib.blake2s(f"seed-{i}".encode(), digest_size=32).digest()


class ChaosTransformTests(unittest.TestCase):
    def test_roundtrip_many_lengths_and_seeds(self):
        rng = random.Random(1234)
        for length in (0, 1, 2, 3, 5, 63, 255, 256, 257, 511, 512, 1000, 4097):
            data = bytes(rng.getrandbits(8) for _ in range(length))
            for s in range(3):
                seed = _seed(s)
                out = chaos.transform(data, seed)
                self.assertEqual(chaos.inverse_transform(out, seed), data, f"len={length} seed={s}")

    def test_structured_input_roundtrip(self):
        seed = _seed(9)
        for data in (b"\x00" * 777, b"\xff" * 300, bytes(range(256)) * 5, b"hello world\n" * 40):
            self.assertEqual(chaos.inverse_transform(chaos.transform(data, seed), seed), data)

    def test_empty_maps_to_empty(self):
        self.assertEqual(chaos.transform(b"", _seed(0)), b"")
        self.assertEqual(chaos.inverse_transform(b"", _seed(0)), b"")

    def test_pure_and_seed_dependent(self):
        data = b"regenerative archive" * 50
        a = chaos.transform(data, _seed(1))
        b = chaos.transform(data, _seed(1))
        c = chaos.transform(data, _seed(2))
        self.assertEqual(a, b)
        self.assertNotEqual(a, c)
        self.assertNotEqual(a[4:], data)

    def test_output_is_frame_sized(self):
        # 4-byte length prefix, padded to an even number of bytes
        for n, expected in ((1, 6), (2, 6), (3, 8), (10, 14)):
            self.assertEqual(len(chaos.transform(b"x" * n, _seed(3))), expected)

    def test_frame_and_unframe(self):
        framed = chaos.frame(b"abc")
        self.assertEqual(framed, b"\x03\x00\x00\x00abc\x00")
        self.assertEqual(chaos.unframe(framed), b"abc")
        self.assertEqual(chaos.unframe(chaos.frame(b"abcd")), b"abcd")

    def test_unframe_rejects_inconsistent_frames(self):
        with self.assertRaises(CorruptStream):
            chaos.unframe(b"\x10\x00\x00\x00ab")  # claims 16 bytes
        with self.assertRaises(CorruptStream):
            chaos.unframe(b"\x03\x00\x00\x00abc\x01")  # non-zero pad
        with self.assertRaises(CorruptStream):
            chaos.unframe(b"\x01\x00\x00")  # odd length

    def test_inverse_rejects_odd_length(self):
        with self.assertRaises(CorruptStream):
            chaos.inverse_transform(b"\x00" * 7, _seed(0))

    def test_seed_size_enforced(self):
        with self.assertRaises(ValueError):
            chaos.transform(b"data", b"short")

    def test_logistic_parameters_in_chaotic_regime(self):
        for i in range(50):
            x0, r = chaos._logistic_params(_seed(i))
            self.assertTrue(0.0 < x0 < 1.0)
            self.assertTrue(3.57 <= r < 4.0)

    def test_pair_permutation_is_a_bijection(self):
        body = bytes(range(256)) * 3 + b"\x01\x02"
        seed = _seed(5)
        shuffled = chaos._permute_pairs(body, seed, inverse=False)
        self.assertEqual(sorted(shuffled), sorted(body))
        self.assertEqual(chaos._permute_pairs(shuffled, seed, inverse=True), body)


class SeedDerivationTests(unittest.TestCase):
    def test_deterministic(self):
        self.assertEqual(derive_seed(b"file bytes"), derive_seed(b"file bytes"))
        self.assertEqual(len(derive_seed(b"")), 32)

    def test_avalanche_on_single_bit(self):
        data = bytearray(b"A" * 1000)
        base = derive_seed(bytes(data))
        data[500] ^= 0x01
        flipped = derive_seed(bytes(data))
        self.assertNotEqual(base, flipped)
        differing_bits = sum(bin(a ^ b).count("1") for a, b in zip(base, flipped))
        self.assertGreater(differing_bits, 64)

    def test_access_key_changes_seed(self):
        self.assertNotEqual(derive_seed(b"same", b"k" * 32), derive_seed(b"same"))


if __name__ == "__main__":
    unittest.main()
