from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from routercap.errors import RevokedError, UploadError
from routercap.logging_setup import correlation_context
from routercap.router.pcap_writer import is_capture_file
from routercap.services import state_store
from routercap.services.metadata import is_metadata_file
from routercap.services.upload_client import UploadClient, md5_hex
from routercap.services.state_store import StateStore
from routercap.units import size2text

LOGGER = logging.getLogger(__name__)


@dataclass
class SyncReport:
    uploaded: List[str] = field(default_factory=list)
    already_present: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: bool = False
    revoked: bool = False


class SyncService:
    """Delivers metadata and capture files from the working directory exactly once.

    Each file is checked before and after sending; a file whose MD5 the
    endpoint already reports is never sent again. Confirmed files are removed
    locally; a run without a descriptor file writes a fresh one.
    """

    def __init__(
        self,
        working_dir: Path,
        client: UploadClient,
        ensure_metadata: Callable[[], Path],
        state: Optional[StateStore] = None,
        on_revoked: Optional[Callable[[], None]] = None,
    ) -> None:
        self._working_dir = working_dir
        self._client = client
        self._ensure_metadata = ensure_metadata
        self._state = state or StateStore()
        self._on_revoked = on_revoked
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _list_files(self) -> tuple[List[Path], List[Path]]:
        names = sorted(p.name for p in self._working_dir.iterdir() if p.is_file())
        metas = [self._working_dir / n for n in names if is_metadata_file(n)]
        captures = [self._working_dir / n for n in names if is_capture_file(n)]
        return metas, captures

    def _delete(self, path: Path, report: SyncReport) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.error("Cannot delete uploaded file=%s reason=%s", path.name, exc, extra={"category": "ERRORS"})
            return
        report.deleted.append(path.name)

    def send_file(self, path: Path, report: SyncReport) -> None:
        """Deliver one file. RevokedError propagates, everything else is contained here."""
        try:
            data = path.read_bytes()
        except OSError as exc:
            LOGGER.error("Cannot read file=%s for upload reason=%s", path.name, exc, extra={"category": "ERRORS"})
            report.failed.append(path.name)
            return
        md5 = md5_hex(data)
        name = path.name

        try:
            if self._client.check(name).confirms(md5):
                LOGGER.debug("File already present on server file=%s", name, extra={"category": "SYNC"})
                report.already_present.append(name)
                self._delete(path, report)
                return
        except UploadError as exc:
            # The check is only a shortcut; the post-upload check decides.
            LOGGER.debug("Pre-upload check failed file=%s reason=%s", name, exc, extra={"category": "SYNC"})

        try:
            status = self._client.upload(name, data)
            confirmed = self._client.check(name)
        except UploadError as exc:
            LOGGER.error("Cannot send file=%s reason=%s", name, exc, extra={"category": "ERRORS"})
            report.failed.append(name)
            return

        if confirmed.confirms(md5):
            LOGGER.debug(
                "Sent file=%s size=%s status=%s",
                name,
                size2text(len(data)),
                status,
                extra={"category": "SYNC"},
            )
            report.uploaded.append(name)
            self._delete(path, report)
            return
        LOGGER.warning(
            "File sent but check failed file=%s status=%s len=%s response=%s",
            name,
            status,
            len(data),
            confirmed.body[:100],
            extra={"category": "SYNC"},
        )
        report.failed.append(name)

    def run(self) -> SyncReport:
        report = SyncReport()
        if self._running:
            LOGGER.warning("Synchronization still running", extra={"category": "SYNC"})
            report.skipped = True
            return report

        self._running = True
        try:
            with correlation_context():
                self._run(report)
        except RevokedError:
            report.revoked = True
            if self._on_revoked is not None:
                self._on_revoked()
        finally:
            self._running = False
            self._state.set(state_store.SYNC_RUNNING, False)
        return report

    def _run(self, report: SyncReport) -> None:
        try:
            metas, captures = self._list_files()
            total = sum(p.stat().st_size for p in captures)
        except OSError as exc:
            LOGGER.error(
                "Cannot read working directory dir=%s for sync reason=%s",
                self._working_dir,
                exc,
                extra={"category": "ERRORS"},
            )
            report.skipped = True
            return
        if not total:
            LOGGER.debug("No files to sync", extra={"category": "SYNC"})
            report.skipped = True
            return

        self._state.set(state_store.SYNC_RUNNING, True)
        LOGGER.info("Syncing files count=%s size=%s", len(captures), size2text(total), extra={"category": "SYNC"})
        if not metas:
            try:
                metas = [self._ensure_metadata()]
            except OSError as exc:
                LOGGER.error("Cannot create metadata file for sync reason=%s", exc, extra={"category": "ERRORS"})
                report.skipped = True
                return

        for path in metas + captures:
            self.send_file(path, report)
        LOGGER.info(
            "Sync finished uploaded=%s already_present=%s failed=%s",
            len(report.uploaded),
            len(report.already_present),
            len(report.failed),
            extra={"category": "SYNC"},
        )


class SyncScheduler:
    """Runs the sync service periodically and on demand, on its own thread."""

    def __init__(self, service: SyncService, interval_seconds: float) -> None:
        self._service = service
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._delayed: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="sync-scheduler", daemon=True)
            self._thread.start()

    def trigger(self, delay_seconds: float = 0.0) -> None:
        """Request an extra run, optionally after ``delay_seconds``."""
        with self._lock:
            if delay_seconds <= 0:
                self._wake.set()
                return
            if self._delayed is not None:
                self._delayed.cancel()
            self._delayed = threading.Timer(delay_seconds, self._wake.set)
            self._delayed.daemon = True
            self._delayed.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        with self._lock:
            if self._delayed is not None:
                self._delayed.cancel()
                self._delayed = None
            thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)

    def _loop(self) -> None:
        LOGGER.info("Sync scheduler started interval_s=%s", int(self._interval), extra={"category": "SYNC"})
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self._service.run()
            except Exception:
                LOGGER.exception("Cannot synchronize", extra={"category": "ERRORS"})
            remaining = max(0.0, self._interval - (time.monotonic() - started))
            self._wake.wait(remaining)
            self._wake.clear()
        LOGGER.info("Sync scheduler stopped", extra={"category": "SYNC"})
