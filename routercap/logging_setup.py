from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE = Path(os.environ.get("ROUTERCAP_LOG_FILE", "logs/routercap.log"))
DEFAULT_CATEGORY = "CONFIG"
CATEGORIES = {
    "CAPTURE",
    "AUTH",
    "FRAMING",
    "FILES",
    "META",
    "SYNC",
    "PERF",
    "CONFIG",
    "ERRORS",
}
NOISY_LOGGERS = ("urllib3", "requests", "scapy", "scapy.runtime")

# Threads do not inherit context variables; capture and sync workers set their own.
_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _correlation_id_var.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    cid = correlation_id or short_uuid()
    token = _correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        _correlation_id_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - correlation_id
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if getattr(record, "category", None) not in CATEGORIES:
            record.category = DEFAULT_CATEGORY
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def _level_from_env(name: str, default: str) -> int:
    level_name = os.environ.get(name, default).upper()
    return getattr(logging, level_name, getattr(logging, default))


def setup_logging(log_file: Optional[Path] = None) -> None:
    """
    Central logging setup.

    Format:
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s

    Calling it again only refreshes the levels from the environment.
    """
    level = _level_from_env("ROUTERCAP_LOG_LEVEL", "INFO")
    external_level = _level_from_env("ROUTERCAP_EXTERNAL_LIB_LOG_LEVEL", "WARNING")

    root_logger = logging.getLogger()
    if getattr(root_logger, "_routercap_logging_installed", False):
        root_logger.setLevel(level)
        for h in root_logger.handlers:
            h.setLevel(level)
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(external_level)
        return

    target = log_file or LOG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)

    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    # Keep the default datefmt so milliseconds stay in the timestamp.
    formatter = logging.Formatter(fmt=fmt)
    enricher = ContextEnricherFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(enricher)

    file_handler = RotatingFileHandler(
        target,
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(enricher)

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._routercap_logging_installed = True  # type: ignore[attr-defined]
