from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from routercap.devices import Device
from routercap.units import parse_duration_seconds, parse_size_bytes

LOGGER = logging.getLogger(__name__)

DEFAULT_LOGIN = "dslf-config"
DEFAULT_INTERFACE = "1-lan"
DEFAULT_MAX_RECORD_LENGTH = 10_000
DEFAULT_FLUSH_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_FLUSH_INTERVAL_SECONDS = 3600.0
DEFAULT_SYNC_INTERVAL_SECONDS = 3600.0
DEFAULT_RESTART_BACKOFF_SECONDS = 10.0
DEFAULT_TOKEN_TTL_SECONDS = 3600.0
DEFAULT_SNAPLEN = 96

# Environment variable -> (section, key). Applied before validation.
_ENV_OVERRIDES = {
    "ROUTERCAP_ROUTER_ADDRESS": ("router", "address"),
    "ROUTERCAP_ROUTER_USERNAME": ("router", "username"),
    "ROUTERCAP_ROUTER_PASSWORD": ("router", "password"),
    "ROUTERCAP_UPLOAD_HOST": ("upload", "host"),
    "ROUTERCAP_UPLOAD_EMAIL": ("upload", "email"),
    "ROUTERCAP_SYNC_INTERVAL": ("upload", "sync_interval"),
    "ROUTERCAP_TEMP_DIR": ("recording", "temp_dir"),
    "ROUTERCAP_FLUSH_MAX_BYTES": ("recording", "flush_max_bytes"),
    "ROUTERCAP_FLUSH_INTERVAL": ("recording", "flush_interval"),
    "ROUTERCAP_MAX_RECORD_LENGTH": ("recording", "max_record_length"),
}


class RouterConfig(BaseModel):
    address: str
    username: str = DEFAULT_LOGIN
    password: str = ""
    interface: str = DEFAULT_INTERFACE
    mac: str = ""
    token_ttl_seconds: float = DEFAULT_TOKEN_TTL_SECONDS
    request_timeout: float = 10.0

    @field_validator("address", mode="before")
    @classmethod
    def normalize_address(cls, value: object) -> str:
        text = str(value or "").strip().rstrip("/")
        for scheme in ("http://", "https://"):
            if text.startswith(scheme):
                text = text[len(scheme):]
        if not text:
            raise ValueError("Router address is required")
        return text

    @field_validator("username", mode="before")
    @classmethod
    def default_username(cls, value: object) -> str:
        text = str(value or "").strip()
        return text or DEFAULT_LOGIN


class UploadConfig(BaseModel):
    host: str = ""
    email: str = ""
    public_key: str = ""
    uuid: str = ""
    scheme: str = "https"
    sync_interval: float = DEFAULT_SYNC_INTERVAL_SECONDS
    request_timeout: float = 60.0

    @field_validator("sync_interval", mode="before")
    @classmethod
    def parse_sync_interval(cls, value: object) -> float:
        return parse_duration_seconds(value, DEFAULT_SYNC_INTERVAL_SECONDS)  # type: ignore[arg-type]

    @field_validator("email", "public_key", "uuid", "host", mode="before")
    @classmethod
    def strip_text(cls, value: object) -> str:
        return str(value or "").strip()


class RecordingConfig(BaseModel):
    enabled: bool = True
    temp_dir: Optional[Path] = None
    state_file: Optional[Path] = None
    snaplen: int = DEFAULT_SNAPLEN
    max_record_length: int = DEFAULT_MAX_RECORD_LENGTH
    flush_max_bytes: int = DEFAULT_FLUSH_MAX_BYTES
    flush_interval: float = DEFAULT_FLUSH_INTERVAL_SECONDS
    restart_backoff_seconds: float = DEFAULT_RESTART_BACKOFF_SECONDS

    @field_validator("temp_dir", "state_file", mode="before")
    @classmethod
    def normalize_path(cls, value: object) -> Optional[Path]:
        text = str(value or "").strip()
        if not text:
            return None
        return Path(text).expanduser()

    @field_validator("flush_max_bytes", mode="before")
    @classmethod
    def parse_flush_max_bytes(cls, value: object) -> int:
        return parse_size_bytes(value, DEFAULT_FLUSH_MAX_BYTES)  # type: ignore[arg-type]

    @field_validator("flush_interval", mode="before")
    @classmethod
    def parse_flush_interval(cls, value: object) -> float:
        return parse_duration_seconds(value, DEFAULT_FLUSH_INTERVAL_SECONDS)  # type: ignore[arg-type]

    @field_validator("max_record_length", "snaplen")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class AppConfig(BaseModel):
    router: RouterConfig
    upload: UploadConfig = Field(default_factory=UploadConfig)
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    devices: List[Device] = Field(default_factory=list)


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(data)
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name, "").strip()
        if not raw:
            continue
        block = dict(merged.get(section) or {})
        block[key] = raw
        merged[section] = block
        LOGGER.debug("Config override from env name=%s", env_name, extra={"category": "CONFIG"})
    return merged


def load_config(config_path: Path) -> AppConfig:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    try:
        cfg = AppConfig.model_validate(_apply_env_overrides(parsed))
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc
    LOGGER.info(
        "Config loaded router=%s devices=%s upload_host=%s",
        cfg.router.address,
        len(cfg.devices),
        cfg.upload.host or "-",
        extra={"category": "CONFIG"},
    )
    return cfg
