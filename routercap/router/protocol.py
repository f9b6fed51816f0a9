from __future__ import annotations

import enum
import logging
import struct
from dataclasses import dataclass
from typing import Iterable

# Magic numbers as read little-endian from the first 4 bytes of the stream.
STANDARD_MAGIC = 0xA1B2C3D4
MODIFIED_MAGIC = 0xA1B2CD34
# Modified magic written big-endian: extended 24-byte record headers, big-endian fields.
LIBPCAP_BE_MAGIC = 0x34CDB2A1
KNOWN_FILE_MAGICS = frozenset({STANDARD_MAGIC, MODIFIED_MAGIC})

PCAP_VERSION_MAJOR = 2
PCAP_VERSION_MINOR = 4
GLOBAL_HEADER_SIZE = 24
STANDARD_RECORD_HEADER_SIZE = 16
EXTENDED_RECORD_HEADER_SIZE = 24

# The router is asked to cut frames at this length; files declare the same snaplen.
SNAPLEN = 96

# Common DLT values (pcap LINKTYPE / DLT)
DLT_EN10MB = 1

ETHERTYPE_IPV4 = 0x0800
IPPROTO_TCP = 6
IPPROTO_UDP = 17
ETHERNET_HEADER_SIZE = 14
UDP_HEADER_SIZE = 8

LOGGER = logging.getLogger(__name__)

_GLOBAL_HDR_LE = struct.Struct("<IHHIIII")
_GLOBAL_HDR_BE = struct.Struct(">IHHIIII")


class HeaderVariant(enum.Enum):
    STANDARD = "standard"
    MODIFIED_LE = "modified_le"
    LIBPCAP_BE_EXTENDED = "libpcap_be_extended"

    @property
    def record_header_size(self) -> int:
        if self is HeaderVariant.STANDARD:
            return STANDARD_RECORD_HEADER_SIZE
        return EXTENDED_RECORD_HEADER_SIZE

    @property
    def big_endian(self) -> bool:
        return self is HeaderVariant.LIBPCAP_BE_EXTENDED

    @property
    def file_magic(self) -> int:
        # Records are always stored little-endian, so both extended variants use the LE modified magic.
        if self is HeaderVariant.STANDARD:
            return STANDARD_MAGIC
        return MODIFIED_MAGIC


@dataclass(frozen=True)
class StreamHeader:
    variant: HeaderVariant
    version_major: int
    version_minor: int
    snaplen: int
    linktype: int


def variant_for_magic(magic: int) -> HeaderVariant:
    if magic == MODIFIED_MAGIC:
        return HeaderVariant.MODIFIED_LE
    if magic == LIBPCAP_BE_MAGIC:
        return HeaderVariant.LIBPCAP_BE_EXTENDED
    if magic != STANDARD_MAGIC:
        LOGGER.warning("Unknown capture stream magic=0x%08x, assuming standard layout", magic, extra={"category": "FRAMING"})
    return HeaderVariant.STANDARD


def parse_stream_header(data: bytes) -> StreamHeader:
    """Decode the 24-byte global header that precedes the router's record stream.

    Only the magic (byte order and record header size) and the link type are
    used afterwards; version and snaplen are informational.
    """
    if len(data) < GLOBAL_HEADER_SIZE:
        raise ValueError("stream header too short")
    magic = struct.unpack_from("<I", data, 0)[0]
    variant = variant_for_magic(magic)
    codec = _GLOBAL_HDR_BE if variant.big_endian else _GLOBAL_HDR_LE
    _magic, major, minor, _zone, _sigfigs, snaplen, linktype = codec.unpack_from(data, 0)
    header = StreamHeader(
        variant=variant,
        version_major=major,
        version_minor=minor,
        snaplen=snaplen,
        linktype=linktype,
    )
    LOGGER.debug(
        "Capture stream header magic=0x%08x variant=%s version=%s.%s snaplen=%s linktype=0x%x",
        magic,
        variant.value,
        major,
        minor,
        snaplen,
        linktype,
        extra={"category": "FRAMING"},
    )
    return header


def build_global_header(variant: HeaderVariant, snaplen: int, linktype: int) -> bytes:
    return _GLOBAL_HDR_LE.pack(
        variant.file_magic,
        PCAP_VERSION_MAJOR,
        PCAP_VERSION_MINOR,
        0,
        0,
        int(snaplen),
        int(linktype),
    )


def starts_with_file_magic(record: bytes) -> bool:
    if len(record) < 4:
        return False
    return struct.unpack_from("<I", record, 0)[0] in KNOWN_FILE_MAGICS


def build_capture_filter(macs: Iterable[str]) -> str:
    """Router filter expression restricting the capture to the given MACs."""
    selected = [m for m in macs if m]
    if not selected:
        return ""
    return f"ether host {' || '.join(selected)}"
