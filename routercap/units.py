from __future__ import annotations

import re

_SIZE_PATTERN = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[a-zA-Z]{0,4})\s*$")
_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
}

_DURATION_PATTERN = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[a-zA-Z]{0,3})\s*$")
_DURATION_UNITS = {
    "": 1,
    "s": 1,
    "sec": 1,
    "m": 60,
    "min": 60,
    "h": 3600,
    "d": 86400,
}


def parse_size_bytes(raw: str | int | None, default: int) -> int:
    """
    Parse a human-readable size and return bytes.

    Accepted examples: 52428800, "50MiB", "50MB", "1.5 GB".
    Returns default for empty/invalid/non-positive inputs.
    """
    if isinstance(raw, int):
        return raw if raw > 0 else default
    match = _SIZE_PATTERN.match(raw or "")
    if not match:
        return default
    multiplier = _SIZE_UNITS.get(match.group("unit").lower())
    if multiplier is None:
        return default
    value = int(float(match.group("num")) * multiplier)
    return value if value > 0 else default


def parse_duration_seconds(raw: str | int | float | None, default: float) -> float:
    """Parse "90", "90s", "60m", "1h" or "1.5h" into seconds."""
    if isinstance(raw, (int, float)):
        return float(raw) if raw > 0 else default
    match = _DURATION_PATTERN.match(raw or "")
    if not match:
        return default
    multiplier = _DURATION_UNITS.get(match.group("unit").lower())
    if multiplier is None:
        return default
    value = float(match.group("num")) * multiplier
    return value if value > 0 else default


def size2text(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{round(size * 10 / 1024) / 10} kB"
    return f"{round(size * 10 / (1024 * 1024)) / 10} MB"
