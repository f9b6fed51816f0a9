from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

import requests

from routercap.config_loader import DEFAULT_LOGIN
from routercap.errors import RouterUnavailableError
from routercap.router.protocol import SNAPLEN, build_capture_filter

LOGGER = logging.getLogger(__name__)

INVALID_SID = "0000000000000000"
LOGIN_PATH = "/login_sid.lua"
CAPTURE_PATH = "/cgi-bin/capture_notimeout"
CAPTURE_PAGE_PATH = "/capture.lua"

_CHALLENGE_RE = re.compile(r"<Challenge>(.*?)</Challenge>")
_SID_RE = re.compile(r"<SID>(.*?)</SID>")
_USER_RE = re.compile(r"<User(?: [a-z]+=\"\w+\")?>([^<]+)</User>")
_ROW_LABEL_RE = re.compile(r"<th>([^<]+)</th>")
_START_VALUE_RE = re.compile(r'name="start"[^>]*value="([^"]+)"')

# Interfaces the capture page lists that never deliver data.
KNOWN_INTERFACES: Dict[str, bool] = {
    ":acc0": True,
    ":acc0.4": True,
    "l2sd0.2": True,
    "l2sm0": False,
    "acc0": True,
    "acc0.4": False,
    "eth0": True,
    "eth1": True,
    "eth2": True,
    "eth3": True,
    "eth_udma0": True,
    "lan": True,
    "ppptty": False,
    "traceDH0": True,
    "traceDH2": True,
    "traceDL0": True,
    "traceDL2": True,
    "traceN0": True,
    "traceV0": True,
    "traceV1": True,
    "vlan_master0": True,
    "wifi0": True,
    "wifi1": True,
}


def compute_challenge_response(challenge: str, password: str) -> str:
    """Router login response: ``<challenge>-md5(utf16le("<challenge>-<password>"))``."""
    digest = hashlib.md5(f"{challenge}-{password}".encode("utf-16-le")).hexdigest()
    return f"{challenge}-{digest}"


@dataclass
class SessionToken:
    sid: str
    created_at: float

    def expired(self, ttl_seconds: float, now: Optional[float] = None) -> bool:
        current = time.monotonic() if now is None else now
        return current - self.created_at >= ttl_seconds


@dataclass(frozen=True)
class CaptureInterface:
    label: str
    value: str


class RouterClient:
    def __init__(
        self,
        address: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._address = address.strip()
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return f"http://{self._address}"

    def _get_text(self, path: str, query: str = "") -> str:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"
        try:
            resp = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as exc:
            raise RouterUnavailableError(f"Router request failed path={path}: {exc}") from exc
        return resp.text or ""

    def get_session_token(self, username: Optional[str], password: str) -> Optional[str]:
        """Perform the challenge-response login and return the SID.

        Returns None for rejected credentials or an unexpected page, raises
        RouterUnavailableError when the router cannot be reached.
        """
        login = (username or "").strip() or DEFAULT_LOGIN
        page = self._get_text(LOGIN_PATH)
        m = _CHALLENGE_RE.search(page)
        if not m:
            LOGGER.warning("Router login page has no challenge router=%s", self._address, extra={"category": "AUTH"})
            return None
        response = compute_challenge_response(m.group(1), (password or "").strip())
        page = self._get_text(LOGIN_PATH, f"username={quote(login, safe='')}&response={response}")
        m = _SID_RE.search(page)
        if not m:
            LOGGER.warning("Router login reply has no SID router=%s", self._address, extra={"category": "AUTH"})
            return None
        sid = m.group(1)
        if sid == INVALID_SID:
            LOGGER.warning("Invalid router password for user %s", login, extra={"category": "AUTH"})
            return None
        LOGGER.debug("Router session established router=%s user=%s", self._address, login, extra={"category": "AUTH"})
        return sid

    def list_users(self) -> List[str]:
        return _USER_RE.findall(self._get_text(LOGIN_PATH))

    def _capture_page(self, sid: str) -> str:
        return self._get_text(CAPTURE_PAGE_PATH, f"sid={sid}")

    def supports_filter(self, sid: str) -> bool:
        return 'id="uiFilter"' in self._capture_page(sid)

    def list_interfaces(self, sid: str) -> List[CaptureInterface]:
        """Capture interfaces offered by the router, without the ones known to stay silent."""
        result: List[CaptureInterface] = []
        for row in self._capture_page(sid).split("</tr>"):
            start = _START_VALUE_RE.search(row)
            if not start:
                continue
            value = start.group(1)
            if not KNOWN_INTERFACES.get(value, True):
                continue
            label = _ROW_LABEL_RE.search(row)
            result.append(CaptureInterface(label=f"{label.group(1)} - {value}" if label else value, value=value))
        return result

    def stop_all_captures(self, sid: str) -> str:
        return self._get_text(CAPTURE_PATH, f"iface=stopall&capture=Stop&sid={sid}").strip()

    def capture_url(self, sid: str, iface: str, macs: Iterable[str], snaplen: int = SNAPLEN) -> str:
        query = f"ifaceorminor={quote(iface.strip(), safe='')}&snaplen={int(snaplen)}"
        expr = build_capture_filter(macs)
        if expr:
            query += f"&filter={quote(expr, safe='')}"
        return f"{self.base_url}{CAPTURE_PATH}?{query}&capture=Start&sid={sid}"

    def open_capture(self, sid: str, iface: str, macs: Iterable[str], snaplen: int = SNAPLEN) -> requests.Response:
        """Start a capture and return the streaming response.

        Only the connect phase has a timeout; the router keeps the body open
        for as long as the capture runs.
        """
        url = self.capture_url(sid, iface, macs, snaplen)
        LOGGER.info("Starting capture url=%s", url.replace(sid, "***"), extra={"category": "CAPTURE"})
        return self._session.get(url, stream=True, timeout=(self._timeout, None))
