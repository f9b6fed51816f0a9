from __future__ import annotations

import datetime as dt
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from routercap.router.protocol import (
    DLT_EN10MB,
    SNAPLEN,
    HeaderVariant,
    build_global_header,
    starts_with_file_magic,
)
from routercap.units import size2text

LOGGER = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
CAPTURE_SUFFIX = ".pcap"


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def file_timestamp(now: Optional[dt.datetime] = None) -> str:
    """Fixed-width UTC timestamp, so that file names sort chronologically."""
    return (now or utc_now()).strftime(TIMESTAMP_FORMAT)


def is_capture_file(name: str) -> bool:
    return name.endswith(CAPTURE_SUFFIX)


@dataclass
class PcapFileWriter:
    working_dir: Path
    snaplen: int = SNAPLEN
    clock: Callable[[], dt.datetime] = utc_now

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _next_path(self) -> Path:
        stamp = file_timestamp(self.clock())
        out = self.working_dir / f"{stamp}{CAPTURE_SUFFIX}"
        seq = 0
        # Two flushes within one second: "_" sorts after ".", order is preserved.
        while out.exists():
            seq += 1
            out = self.working_dir / f"{stamp}_{seq}{CAPTURE_SUFFIX}"
        return out

    def write(
        self,
        records: Sequence[bytes],
        variant: HeaderVariant = HeaderVariant.STANDARD,
        linktype: int = DLT_EN10MB,
    ) -> Optional[Path]:
        """Write one pcap file holding ``records`` in order.

        The file is assembled under a temporary name and renamed into place, so
        readers never see a partial capture. OSError propagates to the caller,
        which keeps its records for the next attempt.
        """
        if not records:
            return None
        with self._lock:
            self.working_dir.mkdir(parents=True, exist_ok=True)
            out = self._next_path()
            tmp = out.with_name(out.name + ".tmp")
            written = 0
            try:
                with open(tmp, "wb") as fh:
                    # Some router firmwares repeat their own global header inside the data stream.
                    if not starts_with_file_magic(records[0]):
                        hdr = build_global_header(variant, self.snaplen, linktype)
                        fh.write(hdr)
                        written += len(hdr)
                    for rec in records:
                        fh.write(rec)
                        written += len(rec)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, out)
            except OSError:
                LOGGER.exception("Cannot write capture file file=%s", out, extra={"category": "ERRORS"})
                try:
                    tmp.unlink()
                except FileNotFoundError:
                    pass
                raise
        LOGGER.info(
            "Saved capture file file=%s records=%s size=%s",
            out.name,
            len(records),
            size2text(written),
            extra={"category": "FILES"},
        )
        return out
