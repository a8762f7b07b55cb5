from __future__ import annotations

"""
Minimal TLV encoder/decoder for container metadata and residual blocks.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Integers: unsigned LEB128 varint
- Bytes: raw payload (length provided by TLV len)
- Strings: UTF-8 bytes (length provided by TLV len)

Metadata (container header)
- 1: item (container; one per key, in insertion order)

Metadata item (within tag=1)
- 1: key (utf8)
- 2: value type (varint: 0=str, 1=int, 2=bytes)
- 3: value (utf8 | varint | bytes)

Residual block tags are listed in sigil.residual.
"""

from typing import Dict, List, Tuple, Union

MetaValue = Union[str, int, bytes]

_VT_STR = 0
_VT_INT = 1
_VT_BYTES = 2

MAX_METADATA_ITEMS = 4096


def varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def varint_decode(data: bytes, pos: int = 0) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


def decode_uint(payload: bytes) -> int:
    value, pos = varint_decode(payload, 0)
    if pos != len(payload):
        raise ValueError("varint: trailing bytes")
    return value


def tlv(tag: int, payload: bytes) -> bytes:
    return varint_encode(tag) + varint_encode(len(payload)) + payload


def iter_tlvs(data: bytes) -> List[Tuple[int, bytes]]:
    items: List[Tuple[int, bytes]] = []
    pos = 0
    n = len(data)
    while pos < n:
        tag, pos = varint_decode(data, pos)
        ln, pos = varint_decode(data, pos)
        if pos + ln > n:
            raise ValueError("TLV length out of range")
        items.append((tag, data[pos : pos + ln]))
        pos += ln
    return items


def dumps_metadata(meta: Dict[str, MetaValue]) -> bytes:
    out = bytearray()
    for key, value in meta.items():
        if not isinstance(key, str) or not key:
            raise ValueError("metadata keys must be non-empty strings")
        if isinstance(value, bool):
            value = int(value)
        if isinstance(value, str):
            vt, raw = _VT_STR, value.encode("utf-8")
        elif isinstance(value, int):
            vt, raw = _VT_INT, varint_encode(value)
        elif isinstance(value, (bytes, bytearray)):
            vt, raw = _VT_BYTES, bytes(value)
        else:
            raise ValueError(f"unsupported metadata value for {key!r}: {type(value).__name__}")
        item = tlv(1, key.encode("utf-8")) + tlv(2, varint_encode(vt)) + tlv(3, raw)
        out += tlv(1, item)
    return bytes(out)


def loads_metadata(data: bytes) -> Dict[str, MetaValue]:
    meta: Dict[str, MetaValue] = {}
    items = iter_tlvs(data)
    if len(items) > MAX_METADATA_ITEMS:
        raise ValueError("metadata item count exceeds limit")
    for tag, payload in items:
        if tag != 1:
            continue  # unknown tags are skipped for forward compatibility
        key = None
        vt = None
        raw = b""
        for itag, ipayload in iter_tlvs(payload):
            if itag == 1:
                key = ipayload.decode("utf-8")
            elif itag == 2:
                vt = decode_uint(ipayload)
            elif itag == 3:
                raw = ipayload
        if key is None or vt is None:
            raise ValueError("metadata item missing key or type")
        if key in meta:
            raise ValueError(f"duplicate metadata key: {key}")
        if vt == _VT_STR:
            meta[key] = raw.decode("utf-8")
        elif vt == _VT_INT:
            meta[key] = decode_uint(raw)
        elif vt == _VT_BYTES:
            meta[key] = bytes(raw)
        else:
            raise ValueError(f"unknown metadata value type {vt} for {key!r}")
    return meta
