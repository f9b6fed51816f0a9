from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Union

from routercap.errors import FramingError
from routercap.router.protocol import (
    ETHERNET_HEADER_SIZE,
    ETHERTYPE_IPV4,
    IPPROTO_TCP,
    IPPROTO_UDP,
    UDP_HEADER_SIZE,
    HeaderVariant,
)

DEFAULT_MAX_RECORD_LENGTH = 10_000

Buffer = Union[bytes, bytearray, memoryview]

_STD_HDR_LE = struct.Struct("<IIII")
_EXT_HDR_LE = struct.Struct("<IIIIIH")
_EXT_HDR_BE = struct.Struct(">IIIIIH")
_CAPLEN_OFFSET = 8


class Status(enum.Enum):
    NEED_MORE = "need_more"
    ADVANCED = "advanced"


class Outcome(enum.Enum):
    KEPT = "kept"
    TRUNCATED = "truncated"
    DROPPED = "dropped"


@dataclass(frozen=True)
class TruncateResult:
    status: Status
    consumed: int = 0
    record: Optional[bytes] = None
    outcome: Optional[Outcome] = None


@dataclass
class FrameStats:
    kept: int = 0
    truncated: int = 0
    dropped: int = 0
    stored_bytes: int = 0

    @property
    def emitted(self) -> int:
        return self.kept + self.truncated

    def add(self, result: TruncateResult) -> None:
        if result.outcome is Outcome.KEPT:
            self.kept += 1
        elif result.outcome is Outcome.TRUNCATED:
            self.truncated += 1
        elif result.outcome is Outcome.DROPPED:
            self.dropped += 1
        if result.record is not None:
            self.stored_bytes += len(result.record)

    def merge(self, other: FrameStats) -> None:
        self.kept += other.kept
        self.truncated += other.truncated
        self.dropped += other.dropped
        self.stored_bytes += other.stored_bytes


@dataclass
class TruncateBatch:
    records: List[bytes] = field(default_factory=list)
    consumed: int = 0
    stats: FrameStats = field(default_factory=FrameStats)


def transport_boundary(frame: Buffer) -> int:
    """Number of leading frame bytes covering Ethernet + IPv4 + TCP/UDP headers.

    Returns 0 when the frame is not IPv4 carrying TCP or UDP; such frames are not stored.
    """
    caplen = len(frame)
    if caplen < ETHERNET_HEADER_SIZE:
        return 0
    ethertype = (frame[12] << 8) | frame[13]
    if ethertype != ETHERTYPE_IPV4:
        return 0
    ip_start = ETHERNET_HEADER_SIZE
    if caplen < ip_start + 10:
        return 0
    ihl = (frame[ip_start] & 0x0F) * 4
    if ihl < 20:
        return 0
    protocol = frame[ip_start + 9]
    if protocol == IPPROTO_UDP:
        return ETHERNET_HEADER_SIZE + ihl + UDP_HEADER_SIZE
    if protocol == IPPROTO_TCP:
        offset_byte = ip_start + ihl + 12
        if offset_byte >= caplen:
            # Data offset not captured: assume the minimal header, the frame is shorter anyway.
            return ETHERNET_HEADER_SIZE + ihl + 20
        return ETHERNET_HEADER_SIZE + ihl + (frame[offset_byte] >> 4) * 4
    return 0


def _canonical_header(header: Buffer, variant: HeaderVariant, caplen: int) -> bytes:
    """Compose the little-endian on-disk record header with the given captured length."""
    if variant is HeaderVariant.STANDARD:
        ts_sec, ts_usec, _caplen, orig_len = _STD_HDR_LE.unpack_from(header, 0)
        return _STD_HDR_LE.pack(ts_sec, ts_usec, caplen, orig_len)
    codec = _EXT_HDR_BE if variant.big_endian else _EXT_HDR_LE
    ts_sec, ts_usec, _caplen, orig_len, ifindex, protocol = codec.unpack_from(header, 0)
    # pkt_type and padding are single bytes and copied as-is.
    return _EXT_HDR_LE.pack(ts_sec, ts_usec, caplen, orig_len, ifindex, protocol) + bytes(header[22:24])


def truncate_next(
    buffer: Buffer,
    variant: HeaderVariant,
    offset: int = 0,
    max_record_length: int = DEFAULT_MAX_RECORD_LENGTH,
) -> TruncateResult:
    """Frame one record starting at ``offset`` and cut its payload to the transport headers.

    NEED_MORE means nothing was consumed. ADVANCED always consumes the full
    record as it arrived (header + original captured length), whether it was
    kept, truncated or dropped. Raises FramingError when the captured length
    exceeds ``max_record_length``.
    """
    header_size = variant.record_header_size
    available = len(buffer) - offset
    if available < header_size:
        return TruncateResult(Status.NEED_MORE)

    caplen = struct.unpack_from(">I" if variant.big_endian else "<I", buffer, offset + _CAPLEN_OFFSET)[0]
    if caplen > max_record_length:
        raise FramingError(f"Packet length is too big: {caplen}", captured_length=caplen)

    consumed = header_size + caplen
    if available < consumed:
        return TruncateResult(Status.NEED_MORE)

    view = memoryview(buffer)
    header = view[offset:offset + header_size]
    frame = view[offset + header_size:offset + consumed]
    boundary = transport_boundary(frame)
    if not boundary:
        return TruncateResult(Status.ADVANCED, consumed=consumed, outcome=Outcome.DROPPED)

    if caplen <= boundary:
        record = _canonical_header(header, variant, caplen) + bytes(frame)
        return TruncateResult(Status.ADVANCED, consumed=consumed, record=record, outcome=Outcome.KEPT)

    record = _canonical_header(header, variant, boundary) + bytes(frame[:boundary])
    return TruncateResult(Status.ADVANCED, consumed=consumed, record=record, outcome=Outcome.TRUNCATED)


def truncate_all(
    buffer: Buffer,
    variant: HeaderVariant,
    max_record_length: int = DEFAULT_MAX_RECORD_LENGTH,
) -> TruncateBatch:
    """Frame every complete record in ``buffer``; trailing partial data is left unconsumed."""
    batch = TruncateBatch()
    while True:
        result = truncate_next(buffer, variant, offset=batch.consumed, max_record_length=max_record_length)
        if result.status is Status.NEED_MORE:
            return batch
        batch.consumed += result.consumed
        batch.stats.add(result)
        if result.record is not None:
            batch.records.append(result.record)
