from __future__ import annotations

import os
import unittest

from sigil import tlv
from sigil.codec import decode_stream, encode_stream, stream_codec
from sigil.constants import CODEC_DEFLATE, CODEC_STORED, CODEC_ZSTD
from sigil.errors import CorruptStream


class EntropyCoderTests(unittest.TestCase):
    def test_roundtrip_each_codec(self):
        data = b"sigil container payload " * 200
        for codec_id in (CODEC_STORED, CODEC_DEFLATE, CODEC_ZSTD):
            stream = encode_stream(data, codec_id)
            self.assertEqual(stream_codec(stream), codec_id)
            self.assertEqual(decode_stream(stream), data)

    def test_incompressible_input_is_stored(self):
        data = os.urandom(4096)
        stream = encode_stream(data, CODEC_ZSTD)
        self.assertEqual(stream_codec(stream), CODEC_STORED)
        self.assertEqual(len(stream), len(data) + 1)
        self.assertEqual(decode_stream(stream), data)

    def test_empty_input(self):
        stream = encode_stream(b"", CODEC_ZSTD)
        self.assertEqual(decode_stream(stream), b"")

    def test_corrupt_streams(self):
        with self.assertRaises(CorruptStream):
            decode_stream(b"")
        with self.assertRaises(CorruptStream):
            decode_stream(b"\x09payload")
        with self.assertRaises(CorruptStream):
            decode_stream(bytes([CODEC_DEFLATE]) + b"not deflate at all")
        with self.assertRaises(CorruptStream):
            decode_stream(bytes([CODEC_ZSTD]) + b"not a zstd frame")

    def test_truncated_zstd_body(self):
        stream = encode_stream(b"abc" * 1000, CODEC_ZSTD)
        self.assertEqual(stream_codec(stream), CODEC_ZSTD)
        with self.assertRaises(CorruptStream):
            decode_stream(stream[: len(stream) // 2])


class MetadataTLVTests(unittest.TestCase):
    def test_roundtrip_preserves_order_and_types(self):
        meta = {"owner": "alice", "ttl": 3600, "blob": b"\x00\x01", "empty": ""}
        out = tlv.loads_metadata(tlv.dumps_metadata(meta))
        self.assertEqual(out, meta)
        self.assertEqual(list(out), list(meta))

    def test_rejects_unsupported_values(self):
        with self.assertRaises(ValueError):
            tlv.dumps_metadata({"x": 1.5})
        with self.assertRaises(ValueError):
            tlv.dumps_metadata({"neg": -1})

    def test_rejects_duplicate_keys(self):
        raw = tlv.dumps_metadata({"k": "a"})
        with self.assertRaises(ValueError):
            tlv.loads_metadata(raw + raw)

    def test_varint_bounds(self):
        for n in (0, 1, 127, 128, 300, 2**32, 2**63 - 1):
            value, pos = tlv.varint_decode(tlv.varint_encode(n))
            self.assertEqual(value, n)
        with self.assertRaises(ValueError):
            tlv.varint_decode(b"\x80")


if __name__ == "__main__":
    unittest.main()
