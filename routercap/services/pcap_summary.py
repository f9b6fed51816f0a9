from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from scapy.layers.inet import ICMP, IP, TCP, UDP
from scapy.layers.l2 import ARP
from scapy.utils import PcapReader

LOGGER = logging.getLogger(__name__)


@dataclass
class PcapSummary:
    packets: int = 0
    bytes: int = 0
    wire_bytes: int = 0
    first_ts: Optional[float] = None
    last_ts: Optional[float] = None
    protocols: Dict[str, int] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        if self.first_ts is None or self.last_ts is None:
            return 0.0
        return max(0.0, self.last_ts - self.first_ts)


def _protocol_of(pkt: object) -> str:
    if pkt.haslayer(TCP):  # type: ignore[attr-defined]
        return "tcp"
    if pkt.haslayer(UDP):  # type: ignore[attr-defined]
        return "udp"
    if pkt.haslayer(ICMP):  # type: ignore[attr-defined]
        return "icmp"
    if pkt.haslayer(IP):  # type: ignore[attr-defined]
        return "ip-other"
    if pkt.haslayer(ARP):  # type: ignore[attr-defined]
        return "arp"
    return "other"


def summarize_pcap(path: Path) -> PcapSummary:
    """Count packets, stored bytes and protocols of a capture file produced by the recorder."""
    summary = PcapSummary()
    protocols: Counter[str] = Counter()
    with PcapReader(str(path)) as reader:
        for pkt in reader:
            summary.packets += 1
            summary.bytes += len(bytes(pkt))
            summary.wire_bytes += int(getattr(pkt, "wirelen", None) or len(bytes(pkt)))
            ts = float(pkt.time)
            if summary.first_ts is None or ts < summary.first_ts:
                summary.first_ts = ts
            if summary.last_ts is None or ts > summary.last_ts:
                summary.last_ts = ts
            protocols[_protocol_of(pkt)] += 1
    summary.protocols = dict(protocols.most_common())
    LOGGER.debug(
        "Summarized file=%s packets=%s bytes=%s",
        path.name,
        summary.packets,
        summary.bytes,
        extra={"category": "FILES"},
    )
    return summary
