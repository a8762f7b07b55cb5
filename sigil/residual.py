"""Residual block: the redundancy a container carries for regeneration.

Layout::

    "SGRS" || u32 body_len || body (TLV) || blake2s-128(body)

Body tags:
  1: version (varint)
  2: tier id (varint)
  3: chunk count (varint)
  4: symbol size (varint)
  5: LRP stripe width (varint)
  6: LRP stripe (container: 1 stripe index, 2 parity, 3 tag16); repeated
  7: RX seed base (bytes)
  8: RX parity (container: 1 seed id, 2 parity, 3 tag16); repeated
  9: header mirror (bytes)
 10: header mirror tag16

Every parity symbol and the header mirror carry their own tag, so a damaged
body can still be read leniently and only the damaged pieces are discarded.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

from . import tlv
from .constants import RESIDUAL_MAGIC, RESIDUAL_VERSION, TIER_IDS
from .errors import ResidualError
from .hashutil import blake2s_16
from .parity import LRPStripe, ParitySet, RXParity

logger = logging.getLogger(__name__)

_HDR = struct.Struct("<4sI")
_TAG_SIZE = 16
_TIER_NAMES = {v: k for k, v in TIER_IDS.items()}


@dataclass
class Residual:
    tier: str
    parity: ParitySet
    header_mirror: Optional[bytes] = None
    body_intact: bool = True


def encode_residual(res: Residual) -> bytes:
    ps = res.parity
    body = bytearray()
    body += tlv.tlv(1, tlv.varint_encode(RESIDUAL_VERSION))
    body += tlv.tlv(2, tlv.varint_encode(TIER_IDS[res.tier]))
    body += tlv.tlv(3, tlv.varint_encode(ps.chunk_count))
    body += tlv.tlv(4, tlv.varint_encode(ps.symbol_size))
    body += tlv.tlv(5, tlv.varint_encode(ps.lrp_k))
    for stripe in ps.stripes:
        item = (
            tlv.tlv(1, tlv.varint_encode(stripe.stripe_index))
            + tlv.tlv(2, stripe.parity)
            + tlv.tlv(3, stripe.tag16)
        )
        body += tlv.tlv(6, item)
    if ps.rx:
        body += tlv.tlv(7, ps.rx_seed_base)
        for p in ps.rx:
            item = tlv.tlv(1, tlv.varint_encode(p.seed_id)) + tlv.tlv(2, p.parity) + tlv.tlv(3, p.tag16)
            body += tlv.tlv(8, item)
    if res.header_mirror is not None:
        body += tlv.tlv(9, res.header_mirror)
        body += tlv.tlv(10, blake2s_16(res.header_mirror))
    body = bytes(body)
    return _HDR.pack(RESIDUAL_MAGIC, len(body)) + body + blake2s_16(body)


def _parse_symbol(payload: bytes) -> Tuple[int, bytes, bytes]:
    index = None
    parity = b""
    tag16 = b""
    for tag, value in tlv.iter_tlvs(payload):
        if tag == 1:
            index = tlv.decode_uint(value)
        elif tag == 2:
            parity = value
        elif tag == 3:
            tag16 = value
    if index is None or len(tag16) != _TAG_SIZE:
        raise ValueError("parity symbol missing index or tag")
    return index, parity, tag16


def decode_residual(raw: bytes, *, strict: bool = True) -> Residual:
    """Parse a residual block.

    In strict mode any tag mismatch raises :class:`ResidualError`. In lenient
    mode a body whose outer tag fails is still parsed; individual parity
    symbols and the mirror are then trusted only if their own tags match.
    """
    if len(raw) < _HDR.size + _TAG_SIZE:
        raise ResidualError("Residual block truncated")
    magic, body_len = _HDR.unpack_from(raw, 0)
    if magic != RESIDUAL_MAGIC:
        raise ResidualError("Bad residual magic")
    end = _HDR.size + body_len
    if end + _TAG_SIZE != len(raw):
        raise ResidualError("Residual length field does not match block size")
    body = raw[_HDR.size : end]
    intact = blake2s_16(body) == raw[end:]
    if not intact:
        if strict:
            raise ResidualError("Residual body tag mismatch")
        logger.warning("residual body tag mismatch; reading per-symbol tags only")

    version = None
    tier = None
    chunk_count = 0
    symbol_size = 0
    lrp_k = 0
    stripes = []
    rx_seed_base = b""
    rx = []
    mirror = None
    mirror_tag = None
    try:
        for tag, value in tlv.iter_tlvs(body):
            if tag == 1:
                version = tlv.decode_uint(value)
            elif tag == 2:
                tier = _TIER_NAMES.get(tlv.decode_uint(value))
            elif tag == 3:
                chunk_count = tlv.decode_uint(value)
            elif tag == 4:
                symbol_size = tlv.decode_uint(value)
            elif tag == 5:
                lrp_k = tlv.decode_uint(value)
            elif tag == 6:
                stripes.append(_parse_symbol(value))
            elif tag == 7:
                rx_seed_base = value
            elif tag == 8:
                rx.append(_parse_symbol(value))
            elif tag == 9:
                mirror = value
            elif tag == 10:
                mirror_tag = value
    except ValueError as exc:
        raise ResidualError(f"Residual body unreadable: {exc}") from exc
    if version != RESIDUAL_VERSION:
        raise ResidualError(f"Unsupported residual version: {version}")
    if tier is None:
        raise ResidualError("Residual block names an unknown tier")

    ps = ParitySet(symbol_size=symbol_size, chunk_count=chunk_count, lrp_k=lrp_k, rx_seed_base=rx_seed_base)
    for stripe_index, parity, tag16 in stripes:
        start = stripe_index * lrp_k
        members = list(range(start, min(chunk_count, start + lrp_k)))
        if not members or len(parity) != symbol_size:
            continue
        ps.stripes.append(LRPStripe(stripe_index, members, parity, tag16))
    for seed_id, parity, tag16 in rx:
        if len(parity) == symbol_size:
            ps.rx.append(RXParity(seed_id, parity, tag16))

    header_mirror = None
    if mirror is not None:
        if mirror_tag is not None and blake2s_16(mirror) == mirror_tag:
            header_mirror = mirror
        elif strict:
            raise ResidualError("Header mirror tag mismatch")
        else:
            logger.warning("header mirror tag mismatch; mirror ignored")
    return Residual(tier=tier, parity=ps, header_mirror=header_mirror, body_intact=intact)


def residual_span(blob: bytes, pos: int) -> Optional[int]:
    """Return the end offset of a residual block starting at ``pos``, if it fits."""
    if pos + _HDR.size > len(blob):
        return None
    magic, body_len = _HDR.unpack_from(blob, pos)
    if magic != RESIDUAL_MAGIC:
        return None
    end = pos + _HDR.size + body_len + _TAG_SIZE
    return end if end <= len(blob) else None


def scan_residuals(blob: bytes, start: int = 0) -> Iterator[Tuple[int, int, Residual]]:
    """Yield ``(start, end, residual)`` for every parseable residual block in ``blob``."""
    pos = blob.find(RESIDUAL_MAGIC, start)
    while pos != -1:
        end = residual_span(blob, pos)
        if end is not None:
            try:
                yield pos, end, decode_residual(blob[pos:end], strict=False)
            except ResidualError as exc:
                logger.debug("residual candidate at %d rejected: %s", pos, exc)
        pos = blob.find(RESIDUAL_MAGIC, pos + 1)
