"""Tell the home service that a screenshot has been published."""
from __future__ import annotations

import logging
from typing import Any, Dict

import requests

from mailcapture.jobs import Job

LOGGER = logging.getLogger(__name__)
DEFAULT_TIMEOUT_SECONDS = 15


class NotifyError(RuntimeError):
    """Raised when the home service rejects a notification."""


def build_log_form(job: Job, client_folder: str) -> Dict[str, str]:
    parts = job.guid_parts
    return {
        "block_images": parts.image_blocking,
        "imap": "",
        "rppapi": "",
        "client": client_folder,
        "zone": job.zone,
        "test_date": parts.test_date,
        "member_id": parts.member_id,
        "useGuid": "true",
        "ss_record": str(job.record_id(client_folder)),
        "old_guid": job.guid,
        "guid": job.test_guid,
    }


def build_reserve_payload(job: Job, server_id: int, client_folder: str) -> Dict[str, Any]:
    return {
        "zone": job.zone,
        "ss_id": server_id,
        "record_id_array": [job.record_id(client_folder)],
    }


class HomeNotifier:
    def __init__(
        self,
        server_id: int,
        *,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.server_id = server_id
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    def mark_processed(self, reserve_url: str, job: Job, client_folder: str) -> None:
        payload = build_reserve_payload(job, self.server_id, client_folder)
        self._post(reserve_url, json=payload)

    def log_screenshot(self, log_url: str, job: Job, client_folder: str) -> None:
        form = {name: (None, value) for name, value in build_log_form(job, client_folder).items()}
        self._post(log_url, files=form)

    def _post(self, url: str, **kwargs: Any) -> None:
        if not url:
            raise NotifyError("notification URL not provisioned")
        try:
            response = self.session.post(url, timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise NotifyError(f"POST to {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise NotifyError(f"POST to {url} returned HTTP {response.status_code}")
        LOGGER.debug("Notified %s (HTTP %s)", url, response.status_code)
