import json
from typing import List, Optional

import pytest
import requests

from routercap.config_loader import UploadConfig
from routercap.errors import ConfigurationError, RevokedError, UploadError
from routercap.services.upload_client import UploadClient


def _response(status: int, text: str = "", content_type: str = "text/plain") -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = text.encode("utf-8")
    resp._content_consumed = True
    resp.encoding = "utf-8"
    resp.headers["Content-Type"] = content_type
    return resp


class ScriptedSession:
    def __init__(self, *responses: requests.Response) -> None:
        self.responses = list(responses)
        self.calls: List[tuple] = []

    def get(self, url: str, timeout: Optional[float] = None, **kwargs) -> requests.Response:
        self.calls.append(("GET", url, kwargs))
        return self.responses.pop(0)

    def post(self, url: str, timeout: Optional[float] = None, **kwargs) -> requests.Response:
        self.calls.append(("POST", url, kwargs))
        return self.responses.pop(0)


def _cfg(**overrides) -> UploadConfig:
    values = {"host": "collector.example", "email": "a+b@example.org", "public_key": "k/1", "uuid": "u-1"}
    values.update(overrides)
    return UploadConfig(**values)


def test_file_url_quotes_components() -> None:
    client = UploadClient(_cfg(), session=ScriptedSession())

    assert client.file_url("2024-01-01_00-00-00.pcap") == (
        "https://collector.example/api/v1/upload/a%2Bb%40example.org/2024-01-01_00-00-00.pcap?key=k%2F1&uuid=u-1"
    )


def test_unconfigured_client_refuses_requests() -> None:
    client = UploadClient(_cfg(email=""), session=ScriptedSession())

    assert not client.configured
    with pytest.raises(ConfigurationError):
        client.check("x.pcap")


def test_check_returns_server_checksum() -> None:
    client = UploadClient(_cfg(), session=ScriptedSession(_response(200, "0cc175b9c0f1b6a831c399e269772661\n")))

    assert client.check("x.pcap").confirms("0cc175b9c0f1b6a831c399e269772661")


def test_terminate_command_raises_revoked() -> None:
    session = ScriptedSession(_response(200, json.dumps({"command": "terminate"}), "application/json"))
    client = UploadClient(_cfg(), session=session)

    with pytest.raises(RevokedError):
        client.check("x.pcap")


def test_rejected_upload_raises() -> None:
    client = UploadClient(_cfg(), session=ScriptedSession(_response(500, "boom")))

    with pytest.raises(UploadError):
        client.upload("x.pcap", b"data")


@pytest.mark.parametrize(
    "status, message",
    [
        (404, "Unknown email address"),
        (403, "Public key changed"),
        (401, "Invalid password"),
        (422, "Missing email"),
    ],
)
def test_register_key_errors(status: int, message: str) -> None:
    client = UploadClient(_cfg(), session=ScriptedSession(_response(status, "")))

    with pytest.raises(ConfigurationError, match=message):
        client.register_key()


def test_register_key_posts_identity() -> None:
    session = ScriptedSession(_response(200, "ok"))

    UploadClient(_cfg(), session=session).register_key()

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://collector.example/api/v1/registerKey")
    assert kwargs["json"] == {"publicKey": "k/1", "email": "a+b@example.org", "uuid": "u-1"}


class UnreachableSession(ScriptedSession):
    def post(self, url: str, timeout: Optional[float] = None, **kwargs) -> requests.Response:
        self.calls.append(("POST", url, kwargs))
        raise requests.ConnectionError("connection refused")


def test_register_key_transport_failure_raises_upload_error() -> None:
    client = UploadClient(_cfg(), session=UnreachableSession())

    with pytest.raises(UploadError, match="connection refused"):
        client.register_key()
