from __future__ import annotations

import enum
import http.client
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import requests

from routercap.config_loader import RecordingConfig, RouterConfig
from routercap.errors import (
    FramingError,
    RouterUnavailableError,
    UnauthorizedError,
    UnexpectedStatusError,
)
from routercap.logging_setup import correlation_context, short_uuid
from routercap.router.frame_truncator import FrameStats, Status, truncate_next
from routercap.router.pcap_writer import PcapFileWriter
from routercap.router.protocol import DLT_EN10MB, GLOBAL_HEADER_SIZE, HeaderVariant, StreamHeader, parse_stream_header
from routercap.services import state_store
from routercap.services.router_client import RouterClient, SessionToken
from routercap.services.state_store import StateStore
from routercap.units import size2text

LOGGER = logging.getLogger(__name__)

DEFAULT_STREAM_CHUNK_SIZE = 65536
PROGRESS_INTERVAL_SECONDS = 1.0
MONITOR_INTERVAL_SECONDS = 10.0
STATS_LOG_INTERVAL_SECONDS = 60.0
EMPTY_STREAM_WARNING_SECONDS = 3.0

# Raised by a body read once the response was closed under it.
_CLOSED_READ_ERRORS = (requests.RequestException, http.client.HTTPException, OSError, ValueError, AttributeError)


def _stream_chunk_size() -> int:
    raw = os.environ.get("ROUTERCAP_STREAM_CHUNK_SIZE", "").strip()
    if raw:
        try:
            val = int(raw)
            if val >= 1024:
                return val
        except ValueError:
            pass
    return DEFAULT_STREAM_CHUNK_SIZE


class CaptureState(enum.Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    STREAM_OPEN = "stream_open"
    DRAINING = "draining"
    TERMINATING = "terminating"


class CancelHandle:
    """Aborts the in-flight capture request from another thread.

    Closing the response makes the blocked body read fail; ``aborted`` lets
    the receive loop tell that failure apart from a network error.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def attach(self, response: requests.Response) -> None:
        with self._lock:
            self._response = response
            abort_now = self._aborted
        if abort_now:
            response.close()

    def is_abort_error(self, exc: BaseException) -> bool:
        """True when ``exc`` is a read failure caused by ``cancel`` closing the response."""
        return self._aborted and isinstance(exc, _CLOSED_READ_ERRORS)

    def cancel(self) -> None:
        with self._lock:
            self._aborted = True
            response = self._response
        if response is not None:
            try:
                response.close()
            except Exception:
                LOGGER.debug("Closing aborted capture response failed", exc_info=True, extra={"category": "CAPTURE"})


@dataclass
class CaptureContext:
    terminate: bool = False
    cancel_handle: Optional[CancelHandle] = None
    raw_buffer: bytearray = field(default_factory=bytearray)
    pending_records: List[bytes] = field(default_factory=list)
    total_bytes_pending: int = 0
    total_records_captured: int = 0
    header_variant: HeaderVariant = HeaderVariant.STANDARD
    linktype: int = DLT_EN10MB
    stream_header_seen: bool = False
    received_bytes: int = 0
    frame_stats: FrameStats = field(default_factory=FrameStats)
    session_started_at: float = 0.0
    last_flushed_at: float = 0.0

    def reset_session(self, now: float) -> None:
        """Prepare for a fresh stream. Records that could not be flushed yet are kept."""
        self.raw_buffer.clear()
        self.total_records_captured = 0
        self.stream_header_seen = False
        self.received_bytes = 0
        self.frame_stats = FrameStats()
        self.session_started_at = now
        self.last_flushed_at = now


class CaptureService:
    """Keeps one capture stream from the router running while enabled.

    Authentication, the stream and restarts run on a single worker thread.
    Flushes triggered by size or age run on a short-lived helper thread so the
    stream is never blocked by disk or upload work.
    """

    def __init__(
        self,
        router_cfg: RouterConfig,
        recording_cfg: RecordingConfig,
        client: RouterClient,
        writer: PcapFileWriter,
        macs: Sequence[str],
        state: Optional[StateStore] = None,
        on_flushed: Optional[Callable[[Optional[Path]], None]] = None,
        on_progress: Optional[Callable[[CaptureContext], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._router_cfg = router_cfg
        self._recording_cfg = recording_cfg
        self._client = client
        self._writer = writer
        self._macs = list(macs)
        self._state = state or StateStore()
        self._on_flushed = on_flushed
        self._on_progress = on_progress
        self._clock = clock

        self.context = CaptureContext(last_flushed_at=clock())
        self._status = CaptureState.IDLE
        self._token: Optional[SessionToken] = None
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._monitor: Optional[threading.Thread] = None
        self._flush_thread: Optional[threading.Thread] = None
        self._records_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._recording_running = False
        self._last_progress = 0.0
        self._last_stats_log = 0.0

    @property
    def status(self) -> CaptureState:
        return self._status

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def recording(self) -> bool:
        return self._recording_running

    def _set_status(self, status: CaptureState) -> None:
        if status is not self._status:
            LOGGER.debug("Capture state %s -> %s", self._status.value, status.value, extra={"category": "CAPTURE"})
            self._status = status

    # lifecycle

    def start(self) -> bool:
        """Start the capture worker; returns False if one is already running."""
        with self._lifecycle_lock:
            if self.running:
                return False
            self.context.terminate = False
            self._stop_event.clear()
            self._worker = threading.Thread(target=self._run_loop, name="capture-worker", daemon=True)
            self._worker.start()
            self._monitor = threading.Thread(target=self._monitor_loop, name="capture-monitor", daemon=True)
            self._monitor.start()
            return True

    def request_restart(self) -> None:
        """Abort the current stream; the worker drains it and reconnects after the backoff."""
        handle = self.context.cancel_handle
        if handle is not None:
            LOGGER.info("Capture restart requested", extra={"category": "CAPTURE"})
            handle.cancel()

    def stop(self, hard: bool = True, timeout: float = 10.0) -> None:
        """Abort the stream and flush. Without ``hard`` the worker reconnects."""
        if not hard:
            self.request_restart()
            return
        with self._lifecycle_lock:
            self.context.terminate = True
            self._set_status(CaptureState.TERMINATING)
            self._stop_event.set()
            handle = self.context.cancel_handle
            if handle is not None:
                handle.cancel()
            for thread in (self._worker, self._monitor, self._flush_thread):
                if thread is not None and thread.is_alive() and thread is not threading.current_thread():
                    thread.join(timeout=timeout)
            self._worker = None
            self._monitor = None
        try:
            self.flush()
        except OSError:
            LOGGER.error(
                "Final flush failed, %s records kept in memory",
                len(self.context.pending_records),
                extra={"category": "ERRORS"},
            )
        self._set_recording(False)
        self._set_status(CaptureState.IDLE)

    def invalidate_token(self) -> None:
        self._token = None

    # authentication

    def _ensure_token(self) -> Optional[str]:
        token = self._token
        if token is not None and not token.expired(self._router_cfg.token_ttl_seconds, self._clock()):
            return token.sid
        self._token = None
        try:
            sid = self._client.get_session_token(self._router_cfg.username, self._router_cfg.password)
        except RouterUnavailableError as exc:
            LOGGER.error("Cannot get SID from router reason=%s", exc, extra={"category": "AUTH"})
            return None
        if sid:
            self._token = SessionToken(sid=sid, created_at=self._clock())
        return sid

    # worker

    def _run_loop(self) -> None:
        backoff = self._recording_cfg.restart_backoff_seconds
        while not self.context.terminate:
            self._set_status(CaptureState.AUTHENTICATING)
            sid = self._ensure_token()
            if not sid:
                LOGGER.warning(
                    "Cannot login into router, wrong credentials or router not available; retry in %ss",
                    backoff,
                    extra={"category": "AUTH"},
                )
                self._set_status(CaptureState.IDLE)
                self._stop_event.wait(backoff)
                continue

            with correlation_context(short_uuid()):
                self._run_session(sid)
            if self.context.terminate:
                break
            self._set_status(CaptureState.IDLE)
            self._stop_event.wait(backoff)
        LOGGER.info("Capture worker stopped", extra={"category": "CAPTURE"})

    def _run_session(self, sid: str) -> None:
        ctx = self.context
        ctx.reset_session(self._clock())
        self._state.set(state_store.RECORDING_CAPTURED, 0)
        handle = CancelHandle()
        ctx.cancel_handle = handle
        error: Optional[BaseException] = None
        try:
            self._stream(sid, handle)
        except UnauthorizedError as exc:
            self.invalidate_token()
            error = exc
        except (FramingError, UnexpectedStatusError, RouterUnavailableError, requests.RequestException, OSError) as exc:
            error = exc
        except Exception as exc:
            # urllib3 surfaces reads on a closed response with assorted exception types.
            if not handle.is_abort_error(exc):
                raise
            error = exc
        finally:
            ctx.cancel_handle = None
            self._drain(handle, error)

    def _stream(self, sid: str, handle: CancelHandle) -> None:
        ctx = self.context
        response_text = self._client.stop_all_captures(sid)
        if response_text:
            LOGGER.info("Stopped all recordings on router: %s", response_text[:200], extra={"category": "CAPTURE"})
        if ctx.terminate:
            return

        LOGGER.debug(
            "Starting recording on %s/%s macs=%s",
            self._router_cfg.address,
            self._router_cfg.interface,
            len(self._macs),
            extra={"category": "CAPTURE"},
        )
        resp = self._client.open_capture(sid, self._router_cfg.interface, self._macs, self._recording_cfg.snaplen)
        handle.attach(resp)
        try:
            if resp.status_code in (401, 403):
                raise UnauthorizedError(resp.status_code)
            if resp.status_code != 200:
                raise UnexpectedStatusError(resp.status_code)
            self._set_status(CaptureState.STREAM_OPEN)
            for chunk in resp.iter_content(chunk_size=_stream_chunk_size()):
                if chunk:
                    self._on_chunk(chunk)
                if ctx.terminate:
                    handle.cancel()
                    break
        finally:
            resp.close()

    def _drain(self, handle: CancelHandle, error: Optional[BaseException]) -> None:
        ctx = self.context
        if self._status is not CaptureState.TERMINATING:
            self._set_status(CaptureState.DRAINING)
        open_seconds = self._clock() - ctx.session_started_at
        try:
            self.flush()
        except OSError:
            LOGGER.error(
                "Cannot save captured records, %s records kept for the next flush",
                len(ctx.pending_records),
                extra={"category": "ERRORS"},
            )
        if error is None and ctx.received_bytes == 0 and open_seconds < EMPTY_STREAM_WARNING_SECONDS and not ctx.terminate:
            LOGGER.warning(
                "Capture stream closed after %.1fs without data; check interface=%s and router capture support",
                open_seconds,
                self._router_cfg.interface,
                extra={"category": "CAPTURE"},
            )
        if self._recording_running:
            LOGGER.info(
                "Recording stopped records=%s received=%s",
                ctx.total_records_captured,
                size2text(ctx.received_bytes),
                extra={"category": "CAPTURE"},
            )
        self._set_recording(False)
        ctx.total_bytes_pending = sum(len(r) for r in ctx.pending_records)
        ctx.total_records_captured = 0
        if error is not None:
            if handle.is_abort_error(error):
                LOGGER.info("Capture aborted on request", extra={"category": "CAPTURE"})
            elif isinstance(error, FramingError):
                LOGGER.error("Capture stream framing error: %s", error, extra={"category": "ERRORS"})
            else:
                LOGGER.error("Error while recording: %s", error, extra={"category": "ERRORS"})

    # stream processing

    def _on_chunk(self, chunk: bytes) -> None:
        ctx = self.context
        ctx.received_bytes += len(chunk)
        ctx.raw_buffer += chunk
        if not ctx.stream_header_seen:
            if len(ctx.raw_buffer) < GLOBAL_HEADER_SIZE:
                return
            self._apply_stream_header(parse_stream_header(bytes(ctx.raw_buffer[:GLOBAL_HEADER_SIZE])))
            del ctx.raw_buffer[:GLOBAL_HEADER_SIZE]

        self._frame_available()
        now = self._clock()
        if now - self._last_progress >= PROGRESS_INTERVAL_SECONDS:
            self._last_progress = now
            self._report_progress()
        if ctx.total_bytes_pending > self._recording_cfg.flush_max_bytes:
            self._dispatch_flush("size")

    def _apply_stream_header(self, header: StreamHeader) -> None:
        ctx = self.context
        if ctx.pending_records and header.variant is not ctx.header_variant:
            # Records framed under another layout must not share a file with the new ones.
            try:
                self.flush()
            except OSError:
                LOGGER.error("Cannot save records of previous stream layout", extra={"category": "ERRORS"})
        ctx.header_variant = header.variant
        ctx.linktype = header.linktype
        ctx.stream_header_seen = True
        LOGGER.info(
            "Capture stream opened variant=%s linktype=%s snaplen=%s",
            header.variant.value,
            header.linktype,
            header.snaplen,
            extra={"category": "FRAMING"},
        )

    def _frame_available(self) -> None:
        ctx = self.context
        buf = ctx.raw_buffer
        records: List[bytes] = []
        offset = 0
        try:
            while True:
                result = truncate_next(
                    buf,
                    ctx.header_variant,
                    offset=offset,
                    max_record_length=self._recording_cfg.max_record_length,
                )
                if result.status is Status.NEED_MORE:
                    break
                offset += result.consumed
                ctx.frame_stats.add(result)
                if result.record is not None:
                    records.append(result.record)
        finally:
            if offset:
                del buf[:offset]
            if records:
                with self._records_lock:
                    ctx.pending_records.extend(records)
                    ctx.total_bytes_pending += sum(len(r) for r in records)
                    ctx.total_records_captured += len(records)
            if offset and not self._recording_running:
                self._set_recording(True)
                LOGGER.info("Recording started", extra={"category": "CAPTURE"})

    def _report_progress(self) -> None:
        self._state.set(state_store.RECORDING_CAPTURED, self.context.total_records_captured)
        if self._on_progress is not None:
            try:
                self._on_progress(self.context)
            except Exception:
                LOGGER.exception("Progress callback failed", extra={"category": "ERRORS"})

    def _set_recording(self, running: bool) -> None:
        if self._recording_running == running:
            return
        self._recording_running = running
        self._state.set(state_store.CONNECTION, running)
        self._state.set(state_store.RECORDING_RUNNING, running)

    # flushing

    def flush(self) -> Optional[Path]:
        """Write pending records to a new capture file.

        On OSError the records are put back in front of anything captured
        meanwhile and the error propagates.
        """
        ctx = self.context
        with self._flush_lock:
            with self._records_lock:
                records = ctx.pending_records
                ctx.pending_records = []
                ctx.total_bytes_pending = 0
                variant, linktype = ctx.header_variant, ctx.linktype
            ctx.last_flushed_at = self._clock()
            if not records:
                return None
            try:
                return self._writer.write(records, variant, linktype)
            except OSError:
                with self._records_lock:
                    ctx.pending_records[:0] = records
                    ctx.total_bytes_pending = sum(len(r) for r in ctx.pending_records)
                raise

    def _flush_and_notify(self, reason: str) -> None:
        try:
            path = self.flush()
        except OSError:
            LOGGER.error("Automatic flush failed reason=%s, records kept", reason, extra={"category": "ERRORS"})
            return
        LOGGER.debug("Automatic flush reason=%s file=%s", reason, path.name if path else "-", extra={"category": "FILES"})
        if self._on_flushed is not None and not self.context.terminate:
            try:
                self._on_flushed(path)
            except Exception:
                LOGGER.exception("Flush callback failed", extra={"category": "ERRORS"})

    def _dispatch_flush(self, reason: str) -> bool:
        thread = self._flush_thread
        if thread is not None and thread.is_alive():
            return False
        self._flush_thread = threading.Thread(
            target=self._flush_and_notify,
            args=(reason,),
            name="capture-flush",
            daemon=True,
        )
        self._flush_thread.start()
        return True

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(MONITOR_INTERVAL_SECONDS):
            ctx = self.context
            now = self._clock()
            if self._recording_running and now - self._last_stats_log >= STATS_LOG_INTERVAL_SECONDS:
                self._last_stats_log = now
                LOGGER.debug(
                    "Captured %s packets (%s) dropped=%s truncated=%s",
                    ctx.total_records_captured,
                    size2text(ctx.total_bytes_pending),
                    ctx.frame_stats.dropped,
                    ctx.frame_stats.truncated,
                    extra={"category": "PERF"},
                )
            if (
                ctx.total_bytes_pending > self._recording_cfg.flush_max_bytes
                or now - ctx.last_flushed_at >= self._recording_cfg.flush_interval
            ):
                self._dispatch_flush("interval")
