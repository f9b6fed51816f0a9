from __future__ import annotations

import ipaddress
import logging
import re
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

LOGGER = logging.getLogger(__name__)

_MAC_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")
PROC_ARP_TABLE = Path("/proc/net/arp")


def normalize_mac(value: object) -> str:
    text = str(value or "").strip().upper().replace("-", ":")
    if not text:
        return ""
    if not _MAC_RE.match(text):
        raise ValueError(f"Invalid MAC address: {value}")
    return text


class Device(BaseModel):
    ip: str = ""
    mac: str = ""
    description: str = Field(default="", alias="desc")
    enabled: bool = True

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ip", mode="before")
    @classmethod
    def validate_ip(cls, value: object) -> str:
        text = str(value or "").strip()
        if text:
            ipaddress.IPv4Address(text)
        return text

    @field_validator("mac", mode="before")
    @classmethod
    def validate_mac(cls, value: object) -> str:
        return normalize_mac(value)

    def ip_sort_key(self) -> tuple[int, int, str]:
        if not self.ip:
            return (1, 0, self.mac)
        return (0, int(ipaddress.IPv4Address(self.ip)), self.mac)


def active_devices(devices: Iterable[Device]) -> List[Device]:
    return [d for d in devices if d.enabled and (d.ip or d.mac)]


def unique_macs(devices: Iterable[Device], exclude: Iterable[str] = ()) -> List[str]:
    """Deduplicated MACs in configuration order, without the excluded ones (router MAC)."""
    skip = {normalize_mac(m) for m in exclude if m}
    result: List[str] = []
    for dev in devices:
        if not dev.mac or dev.mac in skip or dev.mac in result:
            continue
        result.append(dev.mac)
    return result


class MacResolver(Protocol):
    def resolve(self, ip: str) -> Optional[str]: ...


class ArpTableResolver:
    """Resolve IPv4 addresses to MACs using the kernel neighbour table."""

    def __init__(self, table_path: Path = PROC_ARP_TABLE) -> None:
        self._table_path = table_path
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _read_table(self) -> Dict[str, str]:
        entries: Dict[str, str] = {}
        try:
            lines = self._table_path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            LOGGER.warning("Cannot read ARP table path=%s reason=%s", self._table_path, exc, extra={"category": "CONFIG"})
            return entries
        # IP address  HW type  Flags  HW address  Mask  Device
        for line in lines[1:]:
            parts = line.split()
            if len(parts) < 4:
                continue
            try:
                mac = normalize_mac(parts[3])
            except ValueError:
                continue
            if mac and mac != "00:00:00:00:00:00":
                entries[parts[0]] = mac
        return entries

    def resolve(self, ip: str) -> Optional[str]:
        with self._lock:
            cached = self._cache.get(ip)
            if cached:
                return cached
            table = self._read_table()
            self._cache.update(table)
            return self._cache.get(ip)


def fill_missing_macs(devices: List[Device], resolver: MacResolver) -> List[Device]:
    """Return copies of the devices with MACs resolved where configuration left them empty."""
    result: List[Device] = []
    for dev in devices:
        if dev.mac or not dev.ip:
            result.append(dev)
            continue
        try:
            mac = resolver.resolve(dev.ip)
        except Exception as exc:
            LOGGER.error("Cannot get MAC address ip=%s reason=%s", dev.ip, exc, extra={"category": "ERRORS"})
            mac = None
        if mac:
            LOGGER.debug("Resolved MAC ip=%s mac=%s", dev.ip, mac, extra={"category": "CONFIG"})
            result.append(dev.model_copy(update={"mac": normalize_mac(mac)}))
        else:
            LOGGER.warning("No MAC address found for device ip=%s", dev.ip, extra={"category": "CONFIG"})
            result.append(dev)
    return result
