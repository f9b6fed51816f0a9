from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

CONNECTION = "info.connection"
RECORDING_RUNNING = "info.recording.running"
RECORDING_ENABLED = "info.recording.enabled"
RECORDING_CAPTURED = "info.recording.captured"
SYNC_RUNNING = "info.sync.running"
INSTALLATION_ENABLED = "system.enabled"


class StateStore:
    """Small persisted key/value store for status flags and counters.

    Writes are skipped when a value does not change, so frequent updates
    of unchanged flags stay cheap.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw.strip() else {}
        except (OSError, ValueError) as exc:
            LOGGER.warning("Could not load state file path=%s reason=%s", self._path, exc, extra={"category": "CONFIG"})
            return
        if isinstance(data, dict):
            self._values = data

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._values, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> bool:
        """Store ``value``; returns True when it changed."""
        with self._lock:
            if key in self._values and self._values[key] == value:
                return False
            self._values[key] = value
            try:
                self._save()
            except OSError as exc:
                LOGGER.warning("Could not persist state key=%s reason=%s", key, exc, extra={"category": "ERRORS"})
            return True

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)
