"""Fetch the worker's settings from the home service."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import requests

from mailcapture.config import WorkerConfig, redact_secret
from mailcapture.imaging import pillow_format

LOGGER = logging.getLogger(__name__)
DEFAULT_TIMEOUT_SECONDS = 15
DEFAULT_IMAGE_FORMAT = "png"


class ProvisioningError(RuntimeError):
    """Raised when provisioning data cannot be fetched or understood."""


@dataclass(frozen=True)
class QueueSettings:
    host: str
    port: int
    database: int


@dataclass(frozen=True)
class ProvisioningConfig:
    """Settings handed to this worker by the home service."""

    checkin_url: str
    queue: QueueSettings
    image_folder: str
    thumb_width: int
    thumb_height: int
    bucket: str
    access_key: str
    secret_key: str
    reserve_url: str
    screenshot_log_url: str
    image_format: str = DEFAULT_IMAGE_FORMAT
    client_version_id: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "ProvisioningConfig":
        if not isinstance(payload, Mapping):
            raise ProvisioningError("provisioning response must be a JSON object")
        settings = payload.get("ss_config", payload)
        if not isinstance(settings, Mapping):
            raise ProvisioningError("ss_config must be a JSON object")
        redis_server = settings.get("redis_server") or {}
        if not isinstance(redis_server, Mapping):
            raise ProvisioningError("redis_server must be a JSON object")
        return cls(
            checkin_url=_text(settings.get("checkin_url")),
            queue=QueueSettings(
                host=_text(redis_server.get("host")) or "localhost",
                port=_integer(redis_server.get("port"), "redis_server.port", 6379),
                database=_integer(redis_server.get("database"), "redis_server.database", 0),
            ),
            image_folder=_text(settings.get("image_folder")),
            thumb_width=_integer(settings.get("thumb_width"), "thumb_width", 0),
            thumb_height=_integer(settings.get("thumb_height"), "thumb_height", 0),
            bucket=_text(settings.get("aws_eoa_bucket")),
            access_key=_text(settings.get("aws_access_key")),
            secret_key=_text(settings.get("aws_secret_key")),
            reserve_url=_text(settings.get("reserve_url")),
            screenshot_log_url=_text(settings.get("screenshot_log_url")),
            image_format=_image_format(settings.get("image_format")),
            client_version_id=_text(settings.get("os_email_client_version_id")),
        )

    def describe(self) -> str:
        return (
            f"queue={self.queue.host}:{self.queue.port}/{self.queue.database} "
            f"key={self.image_folder} bucket={self.bucket} "
            f"access_key={redact_secret(self.access_key)}"
        )


class ProvisioningClient:
    """POST the worker's credentials and read back its ``ss_config``."""

    def __init__(
        self,
        config: WorkerConfig,
        *,
        session: requests.Session | None = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._config = config
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    def fetch(self) -> ProvisioningConfig:
        url = self._config.provision_url
        form = {
            "email_address": (None, self._config.email_address),
            "eoa_usr": (None, self._config.upload_user),
            "eoa_pwd": (None, self._config.upload_password),
        }
        LOGGER.info(
            "Requesting provisioning from %s (user %s, password %s)",
            url,
            self._config.upload_user,
            redact_secret(self._config.upload_password),
        )
        try:
            response = self.session.post(url, files=form, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise ProvisioningError(f"provisioning request failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise ProvisioningError(f"provisioning rejected with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProvisioningError("provisioning response is not JSON") from exc
        config = ProvisioningConfig.from_payload(payload)
        LOGGER.debug("Provisioned: %s", config.describe())
        return config


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _image_format(value: Any) -> str:
    image_format = _text(value).lower() or DEFAULT_IMAGE_FORMAT
    try:
        pillow_format(image_format)
    except ValueError as exc:
        raise ProvisioningError(f"image_format {image_format!r} is not supported") from exc
    return image_format


def _integer(value: Any, field: str, default: int) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ProvisioningError(f"{field} must be an integer, got {value!r}") from exc
