from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from routercap.config_loader import AppConfig
from routercap.devices import ArpTableResolver, Device, MacResolver, active_devices, fill_missing_macs, unique_macs
from routercap.errors import ConfigurationError, RevokedError, UploadError
from routercap.router.pcap_writer import PcapFileWriter
from routercap.services import state_store
from routercap.services.capture_service import CaptureService
from routercap.services.metadata import MetadataManager
from routercap.services.router_client import RouterClient
from routercap.services.state_store import StateStore
from routercap.services.sync_service import SyncReport, SyncScheduler, SyncService
from routercap.services.upload_client import UploadClient

LOGGER = logging.getLogger(__name__)

WORKING_SUBDIR = "hourly_pcaps"
STATE_FILENAME = "routercap_state.json"
FALLBACK_TEMP_DIRS = (Path("/run/shm"), Path("/tmp"))
MANUAL_SYNC_DELAY_SECONDS = 2.0


def resolve_temp_dir(configured: Optional[Path], fallbacks: Sequence[Path] = FALLBACK_TEMP_DIRS) -> Path:
    """First existing, writable directory of the configured one and the fallbacks."""
    candidates: List[Path] = [configured] if configured else []
    candidates.extend(fallbacks)
    for candidate in candidates:
        if candidate.is_dir() and os.access(candidate, os.W_OK):
            return candidate
        LOGGER.debug("Temp dir not usable path=%s", candidate, extra={"category": "CONFIG"})
    raise ConfigurationError("No usable temporary directory found")


def validate_config(cfg: AppConfig) -> None:
    missing = []
    if not cfg.router.password:
        missing.append("router.password")
    if not cfg.upload.email:
        missing.append("upload.email")
    if not cfg.upload.public_key:
        missing.append("upload.public_key")
    if not cfg.upload.uuid:
        missing.append("upload.uuid")
    if not cfg.upload.host:
        missing.append("upload.host")
    if missing:
        raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")


class Recorder:
    """Wires capture, metadata and synchronization together for one installation."""

    def __init__(
        self,
        cfg: AppConfig,
        router_client: Optional[RouterClient] = None,
        upload_client: Optional[UploadClient] = None,
        mac_resolver: Optional[MacResolver] = None,
        temp_fallbacks: Sequence[Path] = FALLBACK_TEMP_DIRS,
    ) -> None:
        self.cfg = cfg
        self._router_client = router_client
        self._upload_client = upload_client
        self._mac_resolver = mac_resolver or ArpTableResolver()
        self._temp_fallbacks = temp_fallbacks
        self._lock = threading.Lock()

        self.working_dir: Optional[Path] = None
        self.state: Optional[StateStore] = None
        self.devices: List[Device] = []
        self.macs: List[str] = []
        self.metadata: Optional[MetadataManager] = None
        self.capture: Optional[CaptureService] = None
        self.sync: Optional[SyncService] = None
        self.scheduler: Optional[SyncScheduler] = None

    def prepare(self) -> Path:
        """Validate configuration and set up everything except the threads."""
        validate_config(self.cfg)
        temp_dir = resolve_temp_dir(self.cfg.recording.temp_dir, self._temp_fallbacks)
        working_dir = temp_dir / WORKING_SUBDIR
        try:
            working_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"Cannot create working directory {working_dir}: {exc}") from exc
        self.working_dir = working_dir
        LOGGER.info("Working directory dir=%s", working_dir, extra={"category": "CONFIG"})

        state_path = self.cfg.recording.state_file or temp_dir / STATE_FILENAME
        self.state = StateStore(state_path)
        for key in (state_store.CONNECTION, state_store.RECORDING_RUNNING, state_store.SYNC_RUNNING):
            self.state.set(key, False)
        self.state.set(state_store.RECORDING_CAPTURED, 0)

        self.devices = fill_missing_macs(active_devices(self.cfg.devices), self._mac_resolver)
        exclude = [self.cfg.router.mac] if self.cfg.router.mac else []
        self.macs = unique_macs(self.devices, exclude=exclude)
        if not self.macs:
            LOGGER.warning("No device MAC addresses known, capturing without filter", extra={"category": "CONFIG"})

        router = self._router_client or RouterClient(self.cfg.router.address, timeout=self.cfg.router.request_timeout)
        uploads = self._upload_client or UploadClient(self.cfg.upload)
        self._upload_client = uploads

        self.metadata = MetadataManager(working_dir)
        self.sync = SyncService(
            working_dir,
            uploads,
            ensure_metadata=self.write_metadata,
            state=self.state,
            on_revoked=self.disable,
        )
        self.scheduler = SyncScheduler(self.sync, self.cfg.upload.sync_interval)
        self.capture = CaptureService(
            self.cfg.router,
            self.cfg.recording,
            router,
            PcapFileWriter(working_dir, snaplen=self.cfg.recording.snaplen),
            self.macs,
            state=self.state,
            on_flushed=self._after_flush,
        )
        return working_dir

    def write_metadata(self) -> Path:
        assert self.metadata is not None
        return self.metadata.ensure_current(self.devices)

    def start(self) -> None:
        if self.working_dir is None:
            self.prepare()
        assert self.state is not None and self.capture is not None and self.scheduler is not None
        if not self.state.get(state_store.INSTALLATION_ENABLED, True):
            raise ConfigurationError("Installation was disabled by the collection endpoint")

        try:
            self._upload_client.register_key()  # type: ignore[union-attr]
        except RevokedError:
            self.disable()
            raise ConfigurationError("Installation was disabled by the collection endpoint") from None
        except UploadError as exc:
            LOGGER.warning("Key registration skipped, collection endpoint unreachable: %s", exc, extra={"category": "SYNC"})

        try:
            self.write_metadata()
        except OSError as exc:
            LOGGER.error("Cannot write metadata file reason=%s", exc, extra={"category": "ERRORS"})

        if self.state.get(state_store.RECORDING_ENABLED, self.cfg.recording.enabled):
            self.state.set(state_store.RECORDING_ENABLED, True)
            self.capture.start()
        else:
            LOGGER.info("Recording disabled, only synchronizing", extra={"category": "CAPTURE"})
        self.scheduler.start()

    def set_recording_enabled(self, enabled: bool) -> None:
        assert self.state is not None and self.capture is not None
        with self._lock:
            self.state.set(state_store.RECORDING_ENABLED, enabled)
            if enabled:
                if self.capture.start():
                    LOGGER.info("Recording enabled", extra={"category": "CAPTURE"})
            elif self.capture.running:
                LOGGER.info("Recording disabled", extra={"category": "CAPTURE"})
                self.capture.stop()

    def trigger_write(self) -> Optional[Path]:
        """Flush pending records now and synchronize shortly after."""
        assert self.capture is not None and self.scheduler is not None
        path = self.capture.flush()
        self.scheduler.trigger(MANUAL_SYNC_DELAY_SECONDS)
        return path

    def sync_now(self) -> SyncReport:
        assert self.sync is not None
        return self.sync.run()

    def _after_flush(self, path: Optional[Path]) -> None:
        if self.scheduler is not None:
            self.scheduler.trigger()

    def disable(self) -> None:
        """Called when the collection endpoint revokes this installation."""
        LOGGER.warning("Installation disabled by the collection endpoint", extra={"category": "SYNC"})
        if self.state is not None:
            self.state.set(state_store.INSTALLATION_ENABLED, False)
            self.state.set(state_store.RECORDING_ENABLED, False)
        # Revocation arrives on the sync thread; stopping must not join it.
        threading.Thread(target=self.shutdown, name="recorder-disable", daemon=True).start()

    def shutdown(self) -> None:
        with self._lock:
            if self.capture is not None:
                self.capture.stop()
            if self.scheduler is not None:
                self.scheduler.stop()
        if self.state is not None:
            for key in (state_store.CONNECTION, state_store.RECORDING_RUNNING):
                self.state.set(key, False)
        LOGGER.info("Recorder stopped", extra={"category": "CAPTURE"})
