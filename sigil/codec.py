from __future__ import annotations

import zlib
from typing import Optional

import zstandard

from .constants import (
    CODEC_DEFLATE,
    CODEC_STORED,
    CODEC_ZSTD,
    DEFAULT_DEFLATE_LEVEL,
    DEFAULT_ZSTD_LEVEL,
)
from .errors import CorruptStream


class Codec:
    def __init__(self, codec_id: int, level: Optional[int] = None):
        if codec_id not in (CODEC_STORED, CODEC_DEFLATE, CODEC_ZSTD):
            raise ValueError(f"unsupported codec id: {codec_id}")
        self.codec_id = codec_id
        self.level = level

    def compress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_STORED:
            return bytes(data)
        if self.codec_id == CODEC_DEFLATE:
            return zlib.compress(data, self.level if self.level is not None else DEFAULT_DEFLATE_LEVEL)
        c = zstandard.ZstdCompressor(level=self.level if self.level is not None else DEFAULT_ZSTD_LEVEL)
        return c.compress(data)

    def decompress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_STORED:
            return bytes(data)
        try:
            if self.codec_id == CODEC_DEFLATE:
                return zlib.decompress(data)
            d = zstandard.ZstdDecompressor()
            return d.decompress(data)
        except (zlib.error, zstandard.ZstdError) as exc:
            raise CorruptStream(f"entropy decode failed: {exc}") from exc


def encode_stream(data: bytes, codec_id: int = CODEC_ZSTD, level: Optional[int] = None) -> bytes:
    """Entropy-code ``data`` into a self-describing stream.

    The first byte names the codec actually used. When compression does not
    shrink the input the stream is stored instead, so high-entropy input costs
    one byte of overhead and keeps its byte positions.
    """
    body = Codec(codec_id, level).compress(data)
    if codec_id != CODEC_STORED and len(body) >= len(data):
        codec_id = CODEC_STORED
        body = bytes(data)
    return bytes([codec_id]) + body


def decode_stream(stream: bytes) -> bytes:
    if not stream:
        raise CorruptStream("empty entropy-coded stream")
    codec_id = stream[0]
    try:
        codec = Codec(codec_id)
    except ValueError as exc:
        raise CorruptStream(str(exc)) from exc
    return codec.decompress(stream[1:])


def stream_codec(stream: bytes) -> Optional[int]:
    return stream[0] if stream else None
