#!/usr/bin/env python3
"""Feed a raw capture stream (or any pcap file) through the truncator.

Useful to check framing of a stream dumped from a router, e.g. with
``curl -o stream.raw '<capture url>'``, without touching the router again.
"""
from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from routercap.errors import FramingError
from routercap.router.frame_truncator import DEFAULT_MAX_RECORD_LENGTH, FrameStats, truncate_all
from routercap.router.pcap_writer import PcapFileWriter
from routercap.router.protocol import GLOBAL_HEADER_SIZE, parse_stream_header
from routercap.units import size2text


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a recorded capture stream through the truncator")
    parser.add_argument("stream", type=Path, help="Raw stream or pcap file")
    parser.add_argument("--out-dir", type=Path, default=None, help="Write the truncated records as a pcap here")
    parser.add_argument("--chunk-size", type=int, default=4096, help="Bytes fed per iteration")
    parser.add_argument("--max-record-length", type=int, default=DEFAULT_MAX_RECORD_LENGTH)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    data = args.stream.read_bytes()
    if len(data) < GLOBAL_HEADER_SIZE:
        print("stream shorter than a global header", file=sys.stderr)
        return 2
    header = parse_stream_header(data[:GLOBAL_HEADER_SIZE])
    print(f"variant={header.variant.value} linktype={header.linktype} snaplen={header.snaplen}")

    buffer = bytearray()
    records = []
    stats = FrameStats()
    started = time.perf_counter()
    rc = 0
    try:
        for pos in range(GLOBAL_HEADER_SIZE, len(data), max(1, args.chunk_size)):
            buffer += data[pos : pos + args.chunk_size]
            batch = truncate_all(buffer, header.variant, args.max_record_length)
            del buffer[: batch.consumed]
            stats.merge(batch.stats)
            records.extend(batch.records)
    except FramingError as exc:
        print(f"framing error: {exc}", file=sys.stderr)
        rc = 1
    elapsed = time.perf_counter() - started

    print(
        f"kept={stats.kept} truncated={stats.truncated} dropped={stats.dropped} "
        f"stored={size2text(stats.stored_bytes)} leftover={len(buffer)} elapsed={elapsed:.3f}s"
    )
    if args.out_dir and records:
        out = PcapFileWriter(args.out_dir, snaplen=header.snaplen).write(records, header.variant, header.linktype)
        print(f"written {out}")
    return rc


if __name__ == "__main__":
    raise SystemExit(main())
