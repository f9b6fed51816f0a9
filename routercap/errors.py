from __future__ import annotations


class RouterCapError(Exception):
    """Base class for all routercap failures."""


class ConfigurationError(RouterCapError):
    """Required configuration is missing; the recorder cannot run at all."""


class RouterUnavailableError(RouterCapError):
    """The router could not be reached while authenticating."""


class FramingError(RouterCapError):
    """The capture stream is not framed the way the router promised.

    Fatal for the current capture session only.
    """

    def __init__(self, message: str, captured_length: int | None = None) -> None:
        super().__init__(message)
        self.captured_length = captured_length


class CaptureStreamError(RouterCapError):
    """The capture HTTP stream ended abnormally."""


class UnauthorizedError(CaptureStreamError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Unauthorized (status={status_code})")
        self.status_code = status_code


class UnexpectedStatusError(CaptureStreamError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Unexpected status code: {status_code}")
        self.status_code = status_code


class UploadError(RouterCapError):
    """A single file could not be delivered to the collection endpoint."""


class RevokedError(RouterCapError):
    """The collection endpoint asked this installation to terminate."""
