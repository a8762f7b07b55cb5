from __future__ import annotations

import random
import unittest

from sigil.gf256 import gf_add_bytes, gf_inv, gf_mul, gf_mul_bytes
from sigil.parity import build_parity, reconstruct
from sigil.rx import _add_to_basis, _draw_candidate, rx_combinations


def _chunks(n: int, size: int, *, last: int | None = None, seed: int = 7):
    rng = random.Random(seed)
    out = [bytes(rng.getrandbits(8) for _ in range(size)) for _ in range(n)]
    if last is not None:
        out[-1] = out[-1][:last]
    return out


class GF256Tests(unittest.TestCase):
    def test_inverse_and_bulk_multiply(self):
        for a in range(1, 256):
            self.assertEqual(gf_mul(a, gf_inv(a)), 1)
        self.assertEqual(gf_mul(0x53, 0xCA), 1)
        data = bytes(range(256))
        self.assertEqual(gf_mul_bytes(data, 7), bytes(gf_mul(x, 7) for x in data))
        with self.assertRaises(ZeroDivisionError):
            gf_inv(0)

    def test_add_bytes_shorter_source(self):
        dest = bytearray(b"\x0f\x0f\x0f")
        gf_add_bytes(dest, b"\xff")
        self.assertEqual(bytes(dest), b"\xf0\x0f\x0f")


class RXSamplerTests(unittest.TestCase):
    def test_determinism_and_pivot(self):
        seed_base = b"SAMPLE-SEED-BASE"
        n = 16
        a = rx_combinations(seed_base, 10, n)
        b = rx_combinations(seed_base, 10, n)
        self.assertEqual(a, b)
        for sid, combo in enumerate(a):
            cols = [c for c, _ in combo]
            self.assertEqual(cols, sorted(set(cols)))
            self.assertTrue(all(coeff != 0 for _, coeff in combo))
            self.assertTrue(3 <= len(combo) <= 5)
            # redrawn rows keep the pivot too
            self.assertIn(sid % n, cols)

    def test_rank_growth(self):
        seed_base = b"RANK-TEST-SEED"
        n = 12
        basis = []
        for combo in rx_combinations(seed_base, 9, n):
            _add_to_basis(dict(combo), basis)
        self.assertGreaterEqual(len(basis), 8)

    def test_degree_capped_by_chunk_count(self):
        combo = _draw_candidate(b"tiny", 0, 2, 0)
        self.assertEqual(len(combo), 2)
        self.assertEqual(rx_combinations(b"none", 3, 0), [])


class ParityRepairTests(unittest.TestCase):
    def test_lrp_single_erasure_per_stripe(self):
        chunks = _chunks(10, 64, last=40)
        ps = build_parity(chunks, symbol_size=64, lrp_k=4, rx_count=0, rx_seed_base=b"")
        self.assertEqual(len(ps.stripes), 3)
        self.assertEqual(ps.stripes[-1].data_chunks, [8, 9])
        missing = [1, 6, 9]
        available = {i: c for i, c in enumerate(chunks) if i not in missing}
        solved = reconstruct(ps, available, missing, lengths={i: len(chunks[i]) for i in missing})
        self.assertEqual(solved, {i: chunks[i] for i in missing})

    def test_lrp_cannot_solve_double_erasure_alone(self):
        chunks = _chunks(8, 32)
        ps = build_parity(chunks, symbol_size=32, lrp_k=8, rx_count=0, rx_seed_base=b"")
        available = {i: c for i, c in enumerate(chunks) if i not in (2, 5)}
        self.assertEqual(reconstruct(ps, available, [2, 5]), {})

    def test_rx_solves_pivot_column(self):
        chunks = _chunks(12, 48)
        ps = build_parity(chunks, symbol_size=48, lrp_k=0, rx_count=4, rx_seed_base=b"rx-seed")
        available = {i: c for i, c in enumerate(chunks) if i != 0}
        solved = reconstruct(ps, available, [0])
        self.assertEqual(solved[0], chunks[0])

    def test_rx_and_lrp_together_solve_two_in_one_stripe(self):
        chunks = _chunks(10, 64, seed=11)
        ps = build_parity(chunks, symbol_size=64, lrp_k=4, rx_count=3, rx_seed_base=b"both")
        missing = [0, 1, 6]
        available = {i: c for i, c in enumerate(chunks) if i not in missing}
        solved = reconstruct(ps, available, missing)
        self.assertEqual(solved, {i: chunks[i] for i in missing})

    def test_damaged_parity_is_skipped(self):
        chunks = _chunks(4, 16)
        ps = build_parity(chunks, symbol_size=16, lrp_k=4, rx_count=0, rx_seed_base=b"")
        stripe = ps.stripes[0]
        stripe.parity = bytes([stripe.parity[0] ^ 0xFF]) + stripe.parity[1:]
        self.assertFalse(stripe.intact())
        available = {i: c for i, c in enumerate(chunks) if i != 3}
        self.assertEqual(reconstruct(ps, available, [3]), {})


if __name__ == "__main__":
    unittest.main()
