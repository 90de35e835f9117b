"""Configuration helpers for the mail capture worker."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

LOGGER = logging.getLogger(__name__)
DEFAULT_CAPTURE_ROOT = Path.home() / "Documents" / "applemail"
DEFAULT_TARGET_APP = "Mail"
DEFAULT_WINDOW_WIDTH = 1048
DEFAULT_TILE_HEIGHT = 600
DEFAULT_CHUNK_TO_SCROLL = 550
DEFAULT_RETRY_DELAY_SECONDS = 3
DEFAULT_DEQUEUE_TIMEOUT_SECONDS = 3
DEFAULT_CHECK_IN_INTERVAL_SECONDS = 6
DEFAULT_POLL_TIMEOUT_SECONDS = 10
DEFAULT_SETTLE_DELAY_SECONDS = 3
POLL_INTERVAL_SECONDS = 0.1
MONITOR_INTERVAL_SECONDS = 0.1
LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


class WorkerConfigError(Exception):
    """Raised when worker configuration is invalid."""


@dataclass
class WorkerConfig:
    server_id: int
    email_address: str
    upload_user: str
    upload_password: str
    provision_url: str
    capture_root: Path = DEFAULT_CAPTURE_ROOT
    log_level: str = "info"
    debug: bool = False
    target_app: str = DEFAULT_TARGET_APP
    window_width: int = DEFAULT_WINDOW_WIDTH
    tile_height: int = DEFAULT_TILE_HEIGHT
    chunk_to_scroll: int = DEFAULT_CHUNK_TO_SCROLL
    retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS
    dequeue_timeout_seconds: int = DEFAULT_DEQUEUE_TIMEOUT_SECONDS
    check_in_interval_seconds: int = DEFAULT_CHECK_IN_INTERVAL_SECONDS
    poll_timeout_seconds: int = DEFAULT_POLL_TIMEOUT_SECONDS
    settle_delay_seconds: int = DEFAULT_SETTLE_DELAY_SECONDS

    @property
    def screenshot_dir(self) -> Path:
        return self.capture_root / "temp-captures"

    @property
    def eml_dir(self) -> Path:
        return self.capture_root / "eml"

    @property
    def logs_dir(self) -> Path:
        return self.capture_root / "logs"

    @property
    def error_log(self) -> Path:
        return self.logs_dir / "worker-errors.log"

    @property
    def events_log(self) -> Path:
        return self.logs_dir / "events.log"


def load_worker_config(env: Mapping[str, str] | None = None) -> WorkerConfig:
    """Load environment variables into a WorkerConfig."""
    env = env if env is not None else os.environ

    server_id = _parse_server_id(env.get("SERVER_ID"))
    email_address = _require_non_empty(env.get("EMAIL_ADDRESS"), "EMAIL_ADDRESS")
    upload_user = _require_non_empty(env.get("UPLOAD_USER"), "UPLOAD_USER")
    upload_password = _require_non_empty(env.get("UPLOAD_PASSWORD"), "UPLOAD_PASSWORD")
    provision_url = _parse_url(env.get("PROVISION_URL"), "PROVISION_URL")
    log_level = _parse_log_level(env.get("LOG_LEVEL"))
    debug = bool(_parse_optional_bool(env.get("WORKER_DEBUG"), "WORKER_DEBUG"))

    tile_height = _parse_positive_int(env.get("TILE_HEIGHT"), DEFAULT_TILE_HEIGHT, "TILE_HEIGHT")
    chunk_to_scroll = _parse_positive_int(
        env.get("CHUNK_TO_SCROLL"), DEFAULT_CHUNK_TO_SCROLL, "CHUNK_TO_SCROLL"
    )
    if chunk_to_scroll >= tile_height:
        raise WorkerConfigError("CHUNK_TO_SCROLL must be smaller than TILE_HEIGHT")

    return WorkerConfig(
        server_id=server_id,
        email_address=email_address,
        upload_user=upload_user,
        upload_password=upload_password,
        provision_url=provision_url,
        capture_root=_parse_dir(env.get("CAPTURE_ROOT"), DEFAULT_CAPTURE_ROOT),
        log_level=log_level,
        debug=debug or log_level == "debug",
        target_app=(env.get("TARGET_APP") or "").strip() or DEFAULT_TARGET_APP,
        window_width=_parse_positive_int(
            env.get("WINDOW_WIDTH"), DEFAULT_WINDOW_WIDTH, "WINDOW_WIDTH"
        ),
        tile_height=tile_height,
        chunk_to_scroll=chunk_to_scroll,
        retry_delay_seconds=_parse_positive_int(
            env.get("RETRY_DELAY_SECONDS"), DEFAULT_RETRY_DELAY_SECONDS, "RETRY_DELAY_SECONDS"
        ),
        dequeue_timeout_seconds=_parse_positive_int(
            env.get("DEQUEUE_TIMEOUT_SECONDS"),
            DEFAULT_DEQUEUE_TIMEOUT_SECONDS,
            "DEQUEUE_TIMEOUT_SECONDS",
        ),
        check_in_interval_seconds=_parse_positive_int(
            env.get("CHECK_IN_INTERVAL_SECONDS"),
            DEFAULT_CHECK_IN_INTERVAL_SECONDS,
            "CHECK_IN_INTERVAL_SECONDS",
        ),
        poll_timeout_seconds=_parse_positive_int(
            env.get("POLL_TIMEOUT_SECONDS"), DEFAULT_POLL_TIMEOUT_SECONDS, "POLL_TIMEOUT_SECONDS"
        ),
        settle_delay_seconds=_parse_non_negative_int(
            env.get("SETTLE_DELAY_SECONDS"), DEFAULT_SETTLE_DELAY_SECONDS, "SETTLE_DELAY_SECONDS"
        ),
    )


def redact_secret(value: str, visible: int = 4) -> str:
    """Redact sensitive values for logging."""
    if not value:
        return ""
    cleaned = value.strip()
    if len(cleaned) <= visible:
        return "*" * len(cleaned)
    hidden = "*" * (len(cleaned) - visible)
    return f"{hidden}{cleaned[-visible:]}"


def _parse_server_id(raw_value: str | None) -> int:
    value = _require_non_empty(raw_value, "SERVER_ID")
    try:
        return int(value)
    except ValueError as exc:
        raise WorkerConfigError("SERVER_ID must be an integer") from exc


def _parse_positive_int(raw_value: str | None, default: int, env_name: str) -> int:
    value = _parse_non_negative_int(raw_value, default, env_name)
    if value == 0:
        raise WorkerConfigError(f"{env_name} must be greater than zero")
    return value


def _parse_non_negative_int(raw_value: str | None, default: int, env_name: str) -> int:
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise WorkerConfigError(f"{env_name} must be an integer") from exc
    if value < 0:
        raise WorkerConfigError(f"{env_name} must be zero or positive")
    return value


def _parse_optional_bool(raw_value: str | None, env_name: str) -> bool | None:
    if raw_value is None or raw_value.strip() == "":
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise WorkerConfigError(f"{env_name} must be a boolean (0/1, true/false)")


def _parse_log_level(raw_value: str | None) -> str:
    if raw_value is None or raw_value.strip() == "":
        return "info"
    normalized = raw_value.strip().lower()
    if normalized not in LOG_LEVELS:
        raise WorkerConfigError(
            f"LOG_LEVEL must be one of {', '.join(sorted(LOG_LEVELS))}"
        )
    return normalized


def _parse_url(raw_value: str | None, env_name: str) -> str:
    url = _require_non_empty(raw_value, env_name)
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        raise WorkerConfigError(f"{env_name} must include http or https scheme")
    if not parsed.netloc:
        raise WorkerConfigError(f"{env_name} must include a hostname")
    return url


def _parse_dir(raw_value: str | None, default: Path) -> Path:
    if raw_value is None or raw_value.strip() == "":
        return default
    return Path(raw_value.strip()).expanduser()


def _require_non_empty(raw_value: str | None, env_name: str) -> str:
    if not raw_value or not raw_value.strip():
        raise WorkerConfigError(f"{env_name} is required")
    return raw_value.strip()
