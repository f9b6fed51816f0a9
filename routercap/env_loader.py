from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_ENV_FILE = Path(".env")


def _parse_env_line(line: str) -> tuple[str, str] | None:
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith("export "):
        text = text[len("export ") :].strip()
    key, sep, value = text.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def load_env_file(path: Optional[Path] = None, override: bool = False) -> Dict[str, str]:
    """Load KEY=VALUE lines into os.environ and return what was applied.

    Only ROUTERCAP_* keys are applied so that a shared .env file cannot
    change unrelated process settings.
    """
    env_path = path or Path(os.environ.get("ROUTERCAP_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if not env_path.is_file():
        return {}
    applied: Dict[str, str] = {}
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        parsed = _parse_env_line(raw_line)
        if not parsed:
            continue
        key, value = parsed
        if not key.startswith("ROUTERCAP_"):
            continue
        if override or key not in os.environ:
            os.environ[key] = value
            applied[key] = value
    LOGGER.info("Loaded env file path=%s keys=%s", env_path, sorted(applied), extra={"category": "CONFIG"})
    return applied
