from __future__ import annotations

import dataclasses
import random
import struct
import threading
import unittest

from sigil.constants import META_SEED
from sigil.container import decode_container, encode_header
from sigil.errors import InsufficientRedundancy, PasswordRequired
from sigil.regen import (
    SOURCE_PARITY,
    Failed,
    PartialRecovery,
    Recovered,
    RegenerationEngine,
    RegenState,
    regenerate,
)
from sigil.siblings import ChunkIndex
from sigil.writer import create


def sample_data(n: int = 10_000, seed: int = 42) -> bytes:
    return random.Random(seed).randbytes(n)


def flipped(data: bytes, pos: int) -> bytes:
    out = bytearray(data)
    out[pos] ^= 0xFF
    return bytes(out)


def payload_start(blob: bytes, container) -> int:
    return len(blob) - len(container.payload)


def damage_chunks(container, indices) -> bytes:
    blob = bytearray(container.to_bytes())
    start = payload_start(blob, container)
    for i in indices:
        blob[start + container.chunks[i].offset + 3] ^= 0x77
    return bytes(blob)


def truncate_at(container, index: int) -> bytes:
    blob = container.to_bytes()
    return blob[: payload_start(blob, container) + container.chunks[index].offset]


class SiblingRecoveryTests(unittest.TestCase):
    def setUp(self):
        self.data = sample_data()

    def _sibling(self, target, pos: int = 2500):
        # same lineage seed, one byte changed inside chunk 2
        return create(flipped(self.data, pos), chunk_size=1024, lineage=target)

    def test_reflection_truncated_recovers_from_parity_and_sibling(self):
        target = create(self.data, chunk_size=1024, tier="reflection")
        sibling = self._sibling(target)
        outcome = regenerate(truncate_at(target, 7), [sibling.to_bytes()])
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)
        self.assertEqual(outcome.container.to_bytes(), target.to_bytes())
        self.assertEqual(outcome.sources, {7: SOURCE_PARITY, 8: "sibling[0]", 9: "sibling[0]"})
        self.assertEqual(outcome.confidence, 1.0)
        self.assertEqual(outcome.confidence_trace, [0.7, 0.8, 0.9, 1.0])

    def test_no_residual_recovers_from_sibling_alone(self):
        target = create(self.data, chunk_size=1024, tier="none")
        sibling = self._sibling(target)
        outcome = regenerate(truncate_at(target, 7), [sibling])
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)
        self.assertEqual(set(outcome.sources.values()), {"sibling[0]"})
        self.assertEqual(outcome.confidence_trace[0], 0.7)

    def test_confidence_is_monotonic(self):
        target = create(self.data, chunk_size=1024, tier="none")
        outcome = regenerate(damage_chunks(target, [0, 3, 5, 8]), [self._sibling(target)])
        self.assertIsInstance(outcome, Recovered)
        trace = outcome.confidence_trace
        self.assertEqual(trace[0], 0.6)
        self.assertEqual(trace[-1], 1.0)
        self.assertEqual(trace, sorted(trace))

    def test_completeness_with_corrupted_chunks(self):
        target = create(self.data, chunk_size=1024, tier="none")
        damaged = damage_chunks(target, [1, 4, 8])
        outcome = regenerate(damaged, [self._sibling(target)])
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(sorted(outcome.sources), [1, 4, 8])

    def test_sibling_only_fills_chunks_it_shares(self):
        target = create(self.data, chunk_size=1024, tier="none")
        # the sibling differs inside chunk 8, so chunk 8 stays missing
        outcome = regenerate(truncate_at(target, 7), [self._sibling(target, pos=8500)])
        self.assertIsInstance(outcome, PartialRecovery)
        self.assertEqual(outcome.missing_chunks, [8])
        self.assertAlmostEqual(outcome.confidence, 0.9)

    def test_several_siblings(self):
        target = create(self.data, chunk_size=1024, tier="none")
        siblings = [self._sibling(target, pos=8500), self._sibling(target, pos=2500)]
        outcome = regenerate(truncate_at(target, 7), siblings, jobs=2)
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.sources[8], "sibling[1]")

    def test_forged_sibling_is_rejected(self):
        target = create(self.data, chunk_size=1024, tier="none")
        other = create(sample_data(seed=99), chunk_size=1024, tier="none")
        forged = dataclasses.replace(other, chunks=list(target.chunks))
        outcome = regenerate(truncate_at(target, 7), [forged])
        self.assertIsInstance(outcome, PartialRecovery)
        self.assertEqual(outcome.missing_chunks, [7, 8, 9])
        self.assertEqual(outcome.sources, {})

    def test_container_structure_as_target(self):
        target = create(self.data, chunk_size=1024, tier="none")
        damaged = decode_container(truncate_at(target, 7), strict=False)
        outcome = regenerate(damaged, [self._sibling(target)])
        self.assertIsInstance(outcome, Recovered)


class ParityRecoveryTests(unittest.TestCase):
    def setUp(self):
        self.data = sample_data(seed=7)

    def test_reflection_one_chunk_per_stripe(self):
        target = create(self.data, chunk_size=1024, tier="reflection")
        outcome = regenerate(damage_chunks(target, [3, 9]))
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)
        self.assertEqual(outcome.sources, {3: SOURCE_PARITY, 9: SOURCE_PARITY})

    def test_reflection_two_in_one_stripe_is_partial(self):
        target = create(self.data, chunk_size=1024, tier="reflection")
        outcome = regenerate(damage_chunks(target, [2, 5]))
        self.assertIsInstance(outcome, PartialRecovery)
        self.assertEqual(outcome.missing_chunks, [2, 5])

    def test_seal_two_in_one_stripe_plus_another(self):
        target = create(self.data, chunk_size=1024, tier="seal")
        outcome = regenerate(damage_chunks(target, [0, 1, 6]))
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)
        self.assertEqual(set(outcome.sources), {0, 1, 6})

    def test_parity_after_sibling_hits(self):
        target = create(self.data, chunk_size=1024, tier="reflection")
        # chunks 1 and 3 share stripe 0; the sibling restores 3, then parity solves 1
        sibling = create(flipped(self.data, 1500), chunk_size=1024, lineage=target)
        outcome = regenerate(damage_chunks(target, [1, 3]), [sibling])
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.sources, {1: SOURCE_PARITY, 3: "sibling[0]"})


class HeaderMirrorTests(unittest.TestCase):
    def setUp(self):
        self.data = sample_data(seed=11)

    def test_corrupt_magic_recovered_from_mirror(self):
        target = create(self.data, chunk_size=1024, tier="seal")
        blob = b"XXXX" + target.to_bytes()[4:]
        outcome = regenerate(blob)
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)
        self.assertEqual(outcome.container.to_bytes(), target.to_bytes())

    def test_corrupt_chunk_map_recovered_from_mirror(self):
        target = create(self.data, chunk_size=1024, tier="seal")
        blob = bytearray(target.to_bytes())
        (meta_len,) = struct.unpack_from("<I", blob, 5)
        hash_pos = 9 + meta_len + 16 + 2 * 52 + 12
        blob[hash_pos] ^= 0x01
        outcome = regenerate(bytes(blob))
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)

    def test_checksum_field_flip_recovered_from_mirror(self):
        target = create(self.data, chunk_size=1024, tier="seal")
        blob = bytearray(target.to_bytes())
        (meta_len,) = struct.unpack_from("<I", blob, 5)
        blob[9 + meta_len + 8] ^= 0x01  # low byte of the checksum field
        outcome = regenerate(bytes(blob))
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)
        self.assertTrue(outcome.container.header_from_mirror)
        self.assertEqual(outcome.container.to_bytes(), target.to_bytes())

    def test_seed_envelope_flip_recovered_from_mirror(self):
        target = create(self.data, chunk_size=1024, tier="seal")
        blob = bytearray(target.to_bytes())
        envelope = target.metadata[META_SEED]
        blob[blob.find(envelope) + len(envelope) // 2] ^= 0x01
        outcome = regenerate(bytes(blob))
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)
        self.assertEqual(outcome.container.to_bytes(), target.to_bytes())

    def test_checksum_field_flip_without_mirror_fails(self):
        target = create(self.data, chunk_size=1024, tier="reflection")
        blob = bytearray(target.to_bytes())
        (meta_len,) = struct.unpack_from("<I", blob, 5)
        blob[9 + meta_len + 8] ^= 0x01
        outcome = regenerate(bytes(blob))
        self.assertIsInstance(outcome, Failed)
        self.assertIn("seed envelope does not open", outcome.reason)
        self.assertEqual(outcome.confidence, 1.0)

    def test_no_mirror_fails(self):
        target = create(self.data, chunk_size=1024, tier="reflection")
        engine = RegenerationEngine(b"XXXX" + target.to_bytes()[4:])
        outcome = engine.run()
        self.assertIsInstance(outcome, Failed)
        self.assertEqual(outcome.confidence, 0.0)
        self.assertEqual(engine.history, [RegenState.SCANNING, RegenState.FAILED])


class LengthFieldTests(unittest.TestCase):
    def setUp(self):
        self.data = sample_data(seed=13)

    def test_residual_length_flip_keeps_payload(self):
        for tier in ("reflection", "seal"):
            target = create(self.data, chunk_size=1024, tier=tier)
            blob = bytearray(target.to_bytes())
            blob[len(encode_header(target.header()))] ^= 0x01  # low byte of residual_len
            outcome = regenerate(bytes(blob))
            self.assertIsInstance(outcome, Recovered, tier)
            self.assertEqual(outcome.data, self.data)
            self.assertEqual(outcome.sources, {})
            self.assertEqual(outcome.container.to_bytes(), target.to_bytes())

    def test_residual_length_flip_without_residual(self):
        target = create(self.data, chunk_size=1024, tier="none")
        blob = bytearray(target.to_bytes())
        blob[len(encode_header(target.header()))] ^= 0x01
        outcome = regenerate(bytes(blob))
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.data, self.data)


class AccessOutcomeTests(unittest.TestCase):
    def setUp(self):
        self.data = sample_data(2000, seed=17)

    def test_keyed_container(self):
        blob = create(self.data, chunk_size=512, tier="none", password="pw").to_bytes()
        with self.assertRaises(PasswordRequired):
            regenerate(blob)
        outcome = regenerate(blob, password="wrong")
        self.assertIsInstance(outcome, Failed)
        self.assertEqual(regenerate(blob, password="pw").data, self.data)

    def test_missing_seed_envelope_fails(self):
        target = create(self.data, chunk_size=512, tier="none")
        stripped = dataclasses.replace(
            target, metadata={k: v for k, v in target.metadata.items() if k != META_SEED}
        )
        outcome = regenerate(stripped)
        self.assertIsInstance(outcome, Failed)
        self.assertIn("seed envelope", outcome.reason)


class OutcomeTests(unittest.TestCase):
    def setUp(self):
        self.data = sample_data()
        self.target = create(self.data, chunk_size=1024, tier="none")

    def test_partial_recovery_report(self):
        outcome = regenerate(truncate_at(self.target, 7))
        self.assertIsInstance(outcome, PartialRecovery)
        self.assertEqual(outcome.missing_chunks, [7, 8, 9])
        self.assertAlmostEqual(outcome.confidence, 0.7)
        self.assertEqual(outcome.recovered_ranges, [(0, 7168)])
        self.assertEqual(outcome.payload[:7168], self.target.payload[:7168])
        self.assertEqual(len(outcome.payload), len(self.target.payload))
        self.assertFalse(outcome.cancelled)
        err = outcome.as_error()
        self.assertIsInstance(err, InsufficientRedundancy)
        self.assertEqual(err.missing, [7, 8, 9])

    def test_cancellation_stops_sibling_matching(self):
        cancel = threading.Event()
        cancel.set()
        sibling = create(flipped(self.data, 2500), chunk_size=1024, lineage=self.target)
        outcome = regenerate(truncate_at(self.target, 7), [sibling], cancel=cancel)
        self.assertIsInstance(outcome, PartialRecovery)
        self.assertTrue(outcome.cancelled)
        self.assertEqual(outcome.missing_chunks, [7, 8, 9])

    def test_intact_container_is_recovered_as_is(self):
        outcome = regenerate(self.target.to_bytes())
        self.assertIsInstance(outcome, Recovered)
        self.assertEqual(outcome.sources, {})
        self.assertEqual(outcome.confidence_trace, [1.0])

    def test_state_history(self):
        sibling = create(flipped(self.data, 2500), chunk_size=1024, lineage=self.target)
        engine = RegenerationEngine(truncate_at(self.target, 7), [sibling])
        self.assertIsInstance(engine.run(), Recovered)
        self.assertEqual(engine.history[:2], [RegenState.SCANNING, RegenState.MATCHING])
        self.assertIn(RegenState.SUBSTITUTING, engine.history)
        self.assertEqual(engine.history[-2:], [RegenState.REASSEMBLING, RegenState.RECOVERED])


class ChunkIndexTests(unittest.TestCase):
    def test_siblings_ranked_by_shared_chunks(self):
        data = sample_data()
        target = create(data, chunk_size=1024, tier="none")
        near = create(flipped(data, 2500), chunk_size=1024, lineage=target)
        far = create(flipped(flipped(data, 2500), 6000), chunk_size=1024, lineage=target)
        stranger = create(sample_data(seed=5), chunk_size=1024)
        index = ChunkIndex()
        index.add("far", far.to_bytes())
        index.add("near", near)
        index.add("stranger", stranger)
        index.add("self", target)
        self.assertEqual(len(index), 4)
        self.assertIn("near", index)
        self.assertEqual(index.siblings_of(target, exclude=["self"]), ["near", "far"])
        self.assertEqual(index.lookup(target.chunks[0].hash), {"far", "near", "self"})
        index.remove("near")
        self.assertNotIn("near", index)
        self.assertEqual(index.siblings_of(target, exclude=["self"]), ["far"])
        self.assertEqual(index.sibling_containers(target, exclude=["self"])[0].merkle_root, far.merkle_root)


if __name__ == "__main__":
    unittest.main()
