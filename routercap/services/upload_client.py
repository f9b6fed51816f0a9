from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import requests

from routercap.config_loader import UploadConfig
from routercap.errors import ConfigurationError, RevokedError, UploadError

LOGGER = logging.getLogger(__name__)

UPLOAD_CONTENT_TYPE = "application/vnd.tcpdump.pcap"
TERMINATE_COMMAND = "terminate"

_REGISTER_ERRORS = {
    404: "Unknown email address",
    403: "Public key changed, please contact the collection operator",
    401: "Invalid password",
    422: "Missing email, public key or uuid",
}


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def _command_of(resp: requests.Response) -> Optional[str]:
    if "json" not in resp.headers.get("Content-Type", ""):
        text = (resp.text or "").lstrip()
        if not text.startswith("{"):
            return None
    try:
        body: Any = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        command = body.get("command")
        return str(command) if command else None
    return None


@dataclass(frozen=True)
class CheckResult:
    status_code: int
    body: str

    def confirms(self, md5: str) -> bool:
        return self.status_code == 200 and self.body.strip() == md5


class UploadClient:
    """HTTP client for the collection endpoint.

    All calls raise RevokedError when the endpoint answers with the
    ``terminate`` command.
    """

    def __init__(self, cfg: UploadConfig, session: Optional[requests.Session] = None) -> None:
        self._cfg = cfg
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self._cfg.host and self._cfg.email and self._cfg.public_key and self._cfg.uuid)

    def _base(self) -> str:
        if not self.configured:
            raise ConfigurationError("Upload endpoint needs host, email, public key and uuid")
        return f"{self._cfg.scheme}://{self._cfg.host}/api/v1"

    def file_url(self, name: str) -> str:
        return (
            f"{self._base()}/upload/{quote(self._cfg.email, safe='')}/{quote(name, safe='')}"
            f"?key={quote(self._cfg.public_key, safe='')}&uuid={quote(self._cfg.uuid, safe='')}"
        )

    def _raise_if_revoked(self, resp: requests.Response) -> None:
        if _command_of(resp) == TERMINATE_COMMAND:
            LOGGER.warning("Server requested to terminate this installation", extra={"category": "SYNC"})
            raise RevokedError("Collection endpoint revoked this installation")

    def check(self, name: str) -> CheckResult:
        try:
            resp = self._session.get(self.file_url(name), timeout=self._cfg.request_timeout)
        except requests.RequestException as exc:
            raise UploadError(f"Check request failed for {name}: {exc}") from exc
        self._raise_if_revoked(resp)
        return CheckResult(status_code=resp.status_code, body=resp.text or "")

    def upload(self, name: str, data: bytes) -> int:
        try:
            resp = self._session.post(
                self.file_url(name),
                data=data,
                headers={"Content-Type": UPLOAD_CONTENT_TYPE},
                timeout=self._cfg.request_timeout,
            )
        except requests.RequestException as exc:
            raise UploadError(f"Upload request failed for {name}: {exc}") from exc
        self._raise_if_revoked(resp)
        if resp.status_code >= 400:
            raise UploadError(f"Upload of {name} rejected status={resp.status_code} body={(resp.text or '')[:200]}")
        return resp.status_code

    def register_key(self) -> None:
        """Announce the installation's public key.

        Rejected identities raise ConfigurationError, transport failures UploadError.
        """
        url = f"{self._base()}/registerKey"
        payload = {"publicKey": self._cfg.public_key, "email": self._cfg.email, "uuid": self._cfg.uuid}
        try:
            resp = self._session.post(url, json=payload, timeout=self._cfg.request_timeout)
        except requests.RequestException as exc:
            raise UploadError(f"Cannot reach the collection endpoint for key registration: {exc}") from exc
        if resp.status_code == 200:
            self._raise_if_revoked(resp)
            LOGGER.info("Successfully registered on the collection endpoint", extra={"category": "SYNC"})
            return
        reason = _REGISTER_ERRORS.get(resp.status_code) or (resp.text or resp.reason or str(resp.status_code))
        LOGGER.error(
            "Cannot register on the collection endpoint status=%s reason=%s",
            resp.status_code,
            reason,
            extra={"category": "ERRORS"},
        )
        raise ConfigurationError(f"Cannot register on the collection endpoint: {reason}")
