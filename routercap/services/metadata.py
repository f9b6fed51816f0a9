from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from routercap.devices import Device
from routercap.router.pcap_writer import file_timestamp, is_capture_file

LOGGER = logging.getLogger(__name__)

METADATA_VERSION = 1
METADATA_SUFFIX = "_meta.json"


def is_metadata_file(name: str) -> bool:
    return name.endswith(METADATA_SUFFIX)


def metadata_filename(stamp: str, version: int = METADATA_VERSION) -> str:
    return f"{stamp}_v{version}{METADATA_SUFFIX}"


def build_description(devices: Iterable[Device]) -> str:
    """JSON descriptor ``{MAC: {"ip": ..., "desc": ...}}`` ordered by IPv4 address."""
    desc = {}
    for dev in sorted(devices, key=lambda d: d.ip_sort_key()):
        if dev.mac:
            desc[dev.mac] = {"ip": dev.ip, "desc": dev.description}
    return json.dumps(desc, indent=2, ensure_ascii=False)


class MetadataManager:
    """Keeps one current device descriptor file in the working directory."""

    def __init__(self, working_dir: Path, stamp: Callable[[], str] = file_timestamp) -> None:
        self._working_dir = working_dir
        self._stamp = stamp

    def _listing(self) -> List[str]:
        names = [
            p.name
            for p in self._working_dir.iterdir()
            if p.is_file() and (is_metadata_file(p.name) or is_capture_file(p.name))
        ]
        names.sort(reverse=True)
        return names

    def _remove(self, name: str) -> None:
        try:
            (self._working_dir / name).unlink()
        except FileNotFoundError:
            return
        LOGGER.debug("Removed superseded metadata file=%s", name, extra={"category": "META"})

    def _drop_adjacent_duplicates(self, names: List[str]) -> List[str]:
        # Of consecutive metadata files, only the newest describes any capture file.
        kept: List[str] = []
        previous_was_meta = False
        for name in names:
            if is_metadata_file(name):
                if previous_was_meta:
                    self._remove(name)
                    continue
                previous_was_meta = True
            else:
                previous_was_meta = False
            kept.append(name)
        return kept

    def current(self) -> Optional[Path]:
        for name in self._listing():
            if is_metadata_file(name):
                return self._working_dir / name
        return None

    def ensure_current(self, devices: Iterable[Device]) -> Path:
        """Make sure the newest metadata file matches ``devices`` and return it.

        A superseded descriptor is kept when capture files recorded after it
        are still waiting for upload.
        """
        text = build_description(devices)
        self._working_dir.mkdir(parents=True, exist_ok=True)
        names = self._drop_adjacent_duplicates(self._listing())

        latest: Optional[str] = None
        captures_after_latest = False
        for name in names:
            if is_metadata_file(name):
                latest = name
                break
            captures_after_latest = True

        if latest is not None:
            latest_path = self._working_dir / latest
            if latest_path.read_text(encoding="utf-8") == text:
                return latest_path

        new_path = self._working_dir / metadata_filename(self._stamp())
        if new_path.name == latest:
            # Same second as the previous descriptor: overwrite unless captures depend on it.
            if captures_after_latest:
                raise OSError(f"Metadata file {new_path.name} already describes pending captures")
            latest = None
        new_path.write_text(text, encoding="utf-8")

        if latest is None:
            LOGGER.info("Meta file created file=%s", new_path.name, extra={"category": "META"})
        elif captures_after_latest:
            LOGGER.info(
                "Meta file updated file=%s previous=%s kept for pending captures",
                new_path.name,
                latest,
                extra={"category": "META"},
            )
        else:
            self._remove(latest)
            LOGGER.info("Meta file updated file=%s previous=%s", new_path.name, latest, extra={"category": "META"})
        return new_path
