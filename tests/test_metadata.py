import json
from pathlib import Path
from typing import Iterator, List

import pytest

from routercap.devices import Device
from routercap.services.metadata import MetadataManager, build_description, metadata_filename


def _stamps(*values: str):
    it: Iterator[str] = iter(values)
    return lambda: next(it)


def _devices() -> List[Device]:
    return [
        Device(ip="192.168.178.10", mac="aa-bb-cc-dd-ee-10", desc="tv"),
        Device(ip="192.168.178.9", mac="AA:BB:CC:DD:EE:09", desc="phone"),
        Device(ip="192.168.178.50", desc="unknown mac"),
    ]


def test_description_is_sorted_by_address() -> None:
    text = build_description(_devices())

    parsed = json.loads(text)
    assert list(parsed) == ["AA:BB:CC:DD:EE:09", "AA:BB:CC:DD:EE:10"]
    assert parsed["AA:BB:CC:DD:EE:10"] == {"ip": "192.168.178.10", "desc": "tv"}
    assert text.startswith('{\n  "AA:BB:CC:DD:EE:09"')


def test_unchanged_devices_reuse_metadata_file(tmp_path: Path) -> None:
    manager = MetadataManager(tmp_path, stamp=_stamps("2024-01-01_00-00-00", "2024-01-01_01-00-00"))

    first = manager.ensure_current(_devices())
    second = manager.ensure_current(_devices())

    assert first == second == tmp_path / metadata_filename("2024-01-01_00-00-00")
    assert [p.name for p in tmp_path.iterdir()] == [first.name]


def test_changed_devices_replace_unused_metadata(tmp_path: Path) -> None:
    manager = MetadataManager(tmp_path, stamp=_stamps("2024-01-01_00-00-00", "2024-01-01_01-00-00"))
    first = manager.ensure_current(_devices())

    second = manager.ensure_current(_devices()[:1])

    assert second != first
    assert not first.exists()
    assert json.loads(second.read_text(encoding="utf-8")) == {
        "AA:BB:CC:DD:EE:10": {"ip": "192.168.178.10", "desc": "tv"}
    }


def test_metadata_with_pending_captures_is_kept(tmp_path: Path) -> None:
    manager = MetadataManager(tmp_path, stamp=_stamps("2024-01-01_00-00-00", "2024-01-01_02-00-00"))
    first = manager.ensure_current(_devices())
    (tmp_path / "2024-01-01_01-00-00.pcap").write_bytes(b"x")

    second = manager.ensure_current(_devices()[:1])

    assert first.exists()
    assert second.exists()
    assert manager.current() == second


def test_adjacent_metadata_files_collapse_to_newest(tmp_path: Path) -> None:
    older = tmp_path / metadata_filename("2024-01-01_00-00-00")
    newer = tmp_path / metadata_filename("2024-01-01_00-30-00")
    older.write_text("{}", encoding="utf-8")
    newer.write_text(build_description(_devices()), encoding="utf-8")
    manager = MetadataManager(tmp_path, stamp=_stamps("2024-01-01_01-00-00"))

    assert manager.ensure_current(_devices()) == newer
    assert not older.exists()


def test_same_second_rewrite_with_pending_captures_fails(tmp_path: Path) -> None:
    manager = MetadataManager(tmp_path, stamp=_stamps("2024-01-01_00-00-00", "2024-01-01_00-00-00"))
    manager.ensure_current(_devices())
    (tmp_path / "2024-01-01_00-00-01.pcap").write_bytes(b"x")

    with pytest.raises(OSError):
        manager.ensure_current(_devices()[:1])
