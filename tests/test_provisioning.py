"""Tests for fetching provisioning data from the home service."""
from __future__ import annotations

import pytest
import requests

from mailcapture.config import WorkerConfig
from mailcapture.provisioning import ProvisioningClient, ProvisioningConfig, ProvisioningError

PAYLOAD = {
    "ss_config": {
        "checkin_url": "https://home.example.com/checkin",
        "redis_server": {"host": "redis.local", "port": "6380", "database": 2},
        "image_folder": "applemail14",
        "thumb_width": 100,
        "thumb_height": "200",
        "aws_eoa_bucket": "screens",
        "aws_access_key": "AKIAEXAMPLE",
        "aws_secret_key": "secret",
        "reserve_url": "https://home.example.com/reserve",
        "screenshot_log_url": "https://home.example.com/log",
        "os_email_client_version_id": 31,
    }
}


class _Response:
    def __init__(self, status_code: int = 200, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON")
        return self._payload


class _Session:
    def __init__(self, response: _Response | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    def post(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def _worker_config() -> WorkerConfig:
    return WorkerConfig(
        server_id=7,
        email_address="seed@example.com",
        upload_user="uploader",
        upload_password="hunter22",
        provision_url="https://home.example.com/provision",
    )


def test_payload_is_parsed() -> None:
    config = ProvisioningConfig.from_payload(PAYLOAD)

    assert config.queue.host == "redis.local"
    assert (config.queue.port, config.queue.database) == (6380, 2)
    assert (config.thumb_width, config.thumb_height) == (100, 200)
    assert config.bucket == "screens"
    assert config.image_format == "png"
    assert config.client_version_id == "31"
    assert "secret" not in config.describe()


def test_queue_defaults() -> None:
    config = ProvisioningConfig.from_payload({"ss_config": {"image_folder": "applemail14"}})

    assert (config.queue.host, config.queue.port, config.queue.database) == ("localhost", 6379, 0)


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"ss_config": "nope"},
        {"ss_config": {"redis_server": "redis.local"}},
        {"ss_config": {"thumb_width": "wide"}},
        {"ss_config": {"image_format": "tiffx"}},
    ],
)
def test_invalid_payloads(payload) -> None:
    with pytest.raises(ProvisioningError):
        ProvisioningConfig.from_payload(payload)


def test_fetch_posts_credentials_as_multipart() -> None:
    session = _Session(_Response(payload=PAYLOAD))

    config = ProvisioningClient(_worker_config(), session=session, timeout_seconds=4).fetch()

    assert config.image_folder == "applemail14"
    url, kwargs = session.calls[0]
    assert url == "https://home.example.com/provision"
    assert kwargs["files"] == {
        "email_address": (None, "seed@example.com"),
        "eoa_usr": (None, "uploader"),
        "eoa_pwd": (None, "hunter22"),
    }
    assert kwargs["timeout"] == 4


@pytest.mark.parametrize(
    ("session", "message"),
    [
        (_Session(error=requests.ConnectionError("refused")), "request failed"),
        (_Session(_Response(status_code=403, payload={})), "HTTP 403"),
        (_Session(_Response(payload=None)), "not JSON"),
    ],
)
def test_fetch_failures(session: _Session, message: str) -> None:
    with pytest.raises(ProvisioningError, match=message):
        ProvisioningClient(_worker_config(), session=session).fetch()


def test_image_format_is_normalised() -> None:
    config = ProvisioningConfig.from_payload({"ss_config": {"image_format": " JPG "}})

    assert config.image_format == "jpg"
