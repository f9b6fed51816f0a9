import logging
import struct
import threading
import time
from pathlib import Path
from typing import Any, List, Optional, Sequence

import requests
from scapy.layers.inet import IP, TCP, UDP
from scapy.layers.l2 import ARP, Ether
from scapy.packet import Raw
from scapy.utils import PcapReader

from routercap.config_loader import RecordingConfig, RouterConfig
from routercap.router.pcap_writer import PcapFileWriter
from routercap.router.protocol import MODIFIED_MAGIC, HeaderVariant, build_global_header
from routercap.services import state_store
from routercap.services.capture_service import CancelHandle, CaptureService, CaptureState
from routercap.services.state_store import StateStore


def _eth() -> Ether:
    return Ether(src="02:00:00:00:00:01", dst="02:00:00:00:00:02")


def _record(frame: bytes) -> bytes:
    return struct.pack("<IIII", 1_700_000_000, 0, len(frame), len(frame)) + frame


def _stream(*frames: bytes) -> bytes:
    return build_global_header(HeaderVariant.STANDARD, 96, 1) + b"".join(_record(f) for f in frames)


UDP_FRAME = bytes(_eth() / IP(src="10.0.0.1", dst="10.0.0.2") / UDP(sport=5000, dport=53) / Raw(b"q" * 40))
TCP_FRAME = bytes(_eth() / IP(src="10.0.0.1", dst="10.0.0.2") / TCP(sport=1234, dport=443) / Raw(b"t" * 200))
ARP_FRAME = bytes(_eth() / ARP(hwsrc="02:00:00:00:00:01", psrc="10.0.0.1", hwdst="00:00:00:00:00:00", pdst="10.0.0.2"))


class FakeStreamResponse(requests.Response):
    def __init__(self, data: bytes, status: int = 200, chunk: int = 7) -> None:
        super().__init__()
        self.status_code = status
        self._data = data
        self._chunk = chunk
        self.closed = False

    def iter_content(self, chunk_size: int = 1, decode_unicode: bool = False):
        for pos in range(0, len(self._data), self._chunk):
            yield self._data[pos : pos + self._chunk]

    def close(self) -> None:
        self.closed = True


class BlockingStreamResponse(FakeStreamResponse):
    """Delivers its data, then blocks like a live capture until closed."""

    def __init__(self, data: bytes) -> None:
        super().__init__(data, chunk=len(data))
        self._closed = threading.Event()

    def iter_content(self, chunk_size: int = 1, decode_unicode: bool = False):
        yield self._data
        self._closed.wait(5)
        raise requests.ConnectionError("connection closed")

    def close(self) -> None:
        self.closed = True
        self._closed.set()


class FakeRouterClient:
    def __init__(self, responses: Sequence[requests.Response], sid: Optional[str] = "0123456789abcdef") -> None:
        self.responses = list(responses)
        self.sid = sid
        self.logins = 0
        self.stop_calls = 0
        self.opened = 0

    def get_session_token(self, username: str, password: str) -> Optional[str]:
        self.logins += 1
        return self.sid

    def stop_all_captures(self, sid: str) -> str:
        self.stop_calls += 1
        return ""

    def open_capture(self, sid: str, iface: str, macs: Sequence[str], snaplen: int) -> requests.Response:
        self.opened += 1
        return self.responses.pop(0)


class RecordingStateStore(StateStore):
    def __init__(self) -> None:
        super().__init__()
        self.history: List[tuple[str, Any]] = []

    def set(self, key: str, value: Any) -> bool:
        changed = super().set(key, value)
        if changed:
            self.history.append((key, value))
        return changed


class BrokenWriter:
    def write(self, records, variant, linktype):
        raise OSError(28, "No space left on device")


def _service(tmp_path: Path, client: FakeRouterClient, writer=None, state=None, **recording: Any) -> CaptureService:
    recording.setdefault("restart_backoff_seconds", 30)
    return CaptureService(
        RouterConfig(address="192.168.178.1", password="secret"),
        RecordingConfig(**recording),
        client,
        writer or PcapFileWriter(tmp_path),
        ["02:00:00:00:00:01"],
        state=state or StateStore(),
    )


def _read_packets(tmp_path: Path) -> list:
    packets = []
    for path in sorted(tmp_path.glob("*.pcap")):
        with PcapReader(str(path)) as reader:
            packets.extend(reader)
    return packets


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_session_frames_and_flushes_stream(tmp_path: Path) -> None:
    client = FakeRouterClient([FakeStreamResponse(_stream(UDP_FRAME, ARP_FRAME, TCP_FRAME))])
    state = RecordingStateStore()
    service = _service(tmp_path, client, state=state)

    service._run_session("0123456789abcdef")

    assert client.stop_calls == 1
    packets = _read_packets(tmp_path)
    assert len(packets) == 2
    assert len(bytes(packets[0])) == 14 + 20 + 8
    assert len(bytes(packets[1])) == 14 + 20 + 20
    assert packets[1].wirelen == len(TCP_FRAME)
    assert service.context.pending_records == []
    assert service.context.frame_stats.dropped == 1
    running = [v for k, v in state.history if k == state_store.RECORDING_RUNNING]
    assert running == [True, False]


def test_unauthorized_stream_invalidates_token(tmp_path: Path) -> None:
    client = FakeRouterClient([FakeStreamResponse(b"", status=403)])
    service = _service(tmp_path, client)
    sid = service._ensure_token()

    service._run_session(sid)

    assert service._token is None
    assert list(tmp_path.iterdir()) == []
    service._ensure_token()
    assert client.logins == 2


def test_token_is_reused_until_expiry(tmp_path: Path) -> None:
    client = FakeRouterClient([])
    service = _service(tmp_path, client)

    assert service._ensure_token() == service._ensure_token()
    assert client.logins == 1


def test_framing_error_keeps_records_parsed_before_it(tmp_path: Path) -> None:
    oversized = struct.pack("<IIII", 1, 0, 20_000, 20_000)
    data = _stream(UDP_FRAME) + oversized + b"\x00" * 64
    client = FakeRouterClient([FakeStreamResponse(data, chunk=len(data))])
    service = _service(tmp_path, client)

    service._run_session("sid")

    assert len(_read_packets(tmp_path)) == 1
    assert service.context.frame_stats.emitted == 1
    assert service.context.pending_records == []


def test_failed_flush_keeps_records_for_next_attempt(tmp_path: Path) -> None:
    client = FakeRouterClient([FakeStreamResponse(_stream(UDP_FRAME, UDP_FRAME))])
    service = _service(tmp_path, client, writer=BrokenWriter())

    service._run_session("sid")

    assert len(service.context.pending_records) == 2
    service._writer = PcapFileWriter(tmp_path)
    assert service.flush() is not None
    assert len(_read_packets(tmp_path)) == 2
    assert service.context.pending_records == []


def test_size_threshold_triggers_flush_callback(tmp_path: Path) -> None:
    flushed: List[Optional[Path]] = []
    client = FakeRouterClient([FakeStreamResponse(_stream(UDP_FRAME, UDP_FRAME, UDP_FRAME), chunk=64)])
    service = _service(tmp_path, client, flush_max_bytes=50)
    service._on_flushed = flushed.append

    service._run_session("sid")
    if service._flush_thread is not None:
        service._flush_thread.join(5)

    assert flushed
    assert len(_read_packets(tmp_path)) == 3


def test_stop_aborts_live_stream_without_error(tmp_path: Path, caplog) -> None:
    response = BlockingStreamResponse(_stream(UDP_FRAME))
    client = FakeRouterClient([response])
    service = _service(tmp_path, client)

    with caplog.at_level(logging.INFO, logger="routercap.services.capture_service"):
        assert service.start()
        assert not service.start()
        assert _wait_for(lambda: service.recording)
        service.stop()

    assert response.closed
    assert not service.running
    assert not service.recording
    assert service.status is CaptureState.IDLE
    assert len(_read_packets(tmp_path)) == 1
    assert "Capture aborted on request" in caplog.text
    assert "Error while recording" not in caplog.text


def test_missing_token_does_not_open_stream(tmp_path: Path) -> None:
    client = FakeRouterClient([], sid=None)
    service = _service(tmp_path, client)

    assert service.start()
    assert _wait_for(lambda: client.logins >= 1)
    service.stop()

    assert client.opened == 0
    assert not service.running


def _ext_record(frame: bytes, big_endian: bool) -> bytes:
    fmt = ">IIIIIH" if big_endian else "<IIIIIH"
    return struct.pack(fmt, 1_700_000_000, 9, len(frame), len(frame), 2, 0x0800) + bytes([0, 0]) + frame


def _written_files(tmp_path: Path) -> List[bytes]:
    return [p.read_bytes() for p in sorted(tmp_path.glob("*.pcap"))]


def test_big_endian_stream_header_is_detected_across_chunks(tmp_path: Path) -> None:
    header = struct.pack(">IHHIIII", MODIFIED_MAGIC, 2, 4, 0, 0, 96, 1)
    data = header + _ext_record(UDP_FRAME, big_endian=True)
    client = FakeRouterClient([FakeStreamResponse(data, chunk=5)])
    service = _service(tmp_path, client)

    service._run_session("sid")

    assert service.context.header_variant is HeaderVariant.LIBPCAP_BE_EXTENDED
    assert service.context.linktype == 1
    [written] = _written_files(tmp_path)
    assert struct.unpack_from("<I", written, 0)[0] == MODIFIED_MAGIC
    assert struct.unpack_from("<IIIIIH", written, 24) == (1_700_000_000, 9, 42, len(UDP_FRAME), 2, 0x0800)
    assert written[48:] == UDP_FRAME[:42]


def test_modified_little_endian_stream_keeps_extended_records(tmp_path: Path) -> None:
    data = build_global_header(HeaderVariant.MODIFIED_LE, 96, 1) + _ext_record(UDP_FRAME, big_endian=False)
    client = FakeRouterClient([FakeStreamResponse(data)])
    service = _service(tmp_path, client)

    service._on_chunk(data[:30])
    assert service.context.header_variant is HeaderVariant.MODIFIED_LE
    assert service.context.pending_records == []
    service._on_chunk(data[30:])

    [record] = service.context.pending_records
    assert struct.unpack_from("<IIIIIH", record, 0) == (1_700_000_000, 9, 42, len(UDP_FRAME), 2, 0x0800)
    assert record[24:] == UDP_FRAME[:42]


def test_empty_stream_logs_warning(tmp_path: Path, caplog) -> None:
    client = FakeRouterClient([FakeStreamResponse(b"")])
    service = _service(tmp_path, client)

    with caplog.at_level(logging.WARNING, logger="routercap.services.capture_service"):
        service._run_session("sid")

    assert "without data; check interface=" in caplog.text
    assert list(tmp_path.iterdir()) == []


def test_stream_with_data_does_not_warn(tmp_path: Path, caplog) -> None:
    client = FakeRouterClient([FakeStreamResponse(_stream(UDP_FRAME))])
    service = _service(tmp_path, client)

    with caplog.at_level(logging.WARNING, logger="routercap.services.capture_service"):
        service._run_session("sid")

    assert "without data" not in caplog.text


def test_worker_logs_in_again_after_unauthorized_stream(tmp_path: Path) -> None:
    live = BlockingStreamResponse(_stream(UDP_FRAME))
    client = FakeRouterClient([FakeStreamResponse(b"", status=403), live])
    service = _service(tmp_path, client, restart_backoff_seconds=0.01)

    assert service.start()
    try:
        assert _wait_for(lambda: client.opened == 2 and service.recording)
    finally:
        service.stop()

    assert client.logins == 2
    assert live.closed
    assert len(_read_packets(tmp_path)) == 1


def test_worker_reconnects_after_unexpected_status(tmp_path: Path, caplog) -> None:
    client = FakeRouterClient([FakeStreamResponse(b"", status=500), BlockingStreamResponse(_stream(UDP_FRAME))])
    service = _service(tmp_path, client, restart_backoff_seconds=0.01)

    with caplog.at_level(logging.ERROR, logger="routercap.services.capture_service"):
        assert service.start()
        try:
            assert _wait_for(lambda: client.opened == 2 and service.recording)
        finally:
            service.stop()

    assert client.logins == 1
    assert "Unexpected status code: 500" in caplog.text


def test_worker_reconnects_after_stream_ends(tmp_path: Path) -> None:
    client = FakeRouterClient([FakeStreamResponse(_stream(UDP_FRAME)), BlockingStreamResponse(_stream(TCP_FRAME))])
    service = _service(tmp_path, client, restart_backoff_seconds=0.01)

    assert service.start()
    try:
        assert _wait_for(lambda: client.opened == 2 and service.recording)
    finally:
        service.stop()

    assert client.logins == 1
    assert client.stop_calls == 2
    assert len(_read_packets(tmp_path)) == 2


def test_soft_stop_restarts_stream(tmp_path: Path, caplog) -> None:
    first = BlockingStreamResponse(_stream(UDP_FRAME))
    second = BlockingStreamResponse(_stream(UDP_FRAME))
    client = FakeRouterClient([first, second])
    service = _service(tmp_path, client, restart_backoff_seconds=0.01)

    with caplog.at_level(logging.INFO, logger="routercap.services.capture_service"):
        assert service.start()
        try:
            assert _wait_for(lambda: service.recording)
            service.stop(hard=False)
            assert _wait_for(lambda: client.opened == 2 and service.recording)
            assert first.closed
            assert not second.closed
            assert service.running
        finally:
            service.stop()

    assert second.closed
    assert not service.running
    assert "Capture restart requested" in caplog.text
    assert "Error while recording" not in caplog.text


def test_cancel_handle_recognises_only_closed_read_errors() -> None:
    handle = CancelHandle()
    assert not handle.is_abort_error(requests.ConnectionError("reset"))

    handle.cancel()

    assert handle.aborted
    assert handle.is_abort_error(requests.ConnectionError("closed"))
    assert handle.is_abort_error(AttributeError("'NoneType' object has no attribute 'read'"))
    assert not handle.is_abort_error(TypeError("unexpected"))
    assert not handle.is_abort_error(KeyError("sid"))
