"""Best-effort heartbeat to the home service."""
from __future__ import annotations

import logging
import threading
from urllib.parse import urlsplit, urlunsplit

import requests

LOGGER = logging.getLogger(__name__)
DEFAULT_TIMEOUT_SECONDS = 5


def build_check_in_url(endpoint: str, server_id: int | str) -> str:
    """Append the server id as the last path segment of ``endpoint``."""
    parts = urlsplit(endpoint)
    segments = [segment for segment in parts.path.split("/") if segment]
    segments.append(str(server_id))
    return urlunsplit((parts.scheme, parts.netloc, "/" + "/".join(segments), "", ""))


class CheckInReporter:
    """Send check-ins without ever blocking or failing the caller."""

    def __init__(
        self,
        server_id: int,
        *,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        background: bool = True,
    ) -> None:
        self.server_id = server_id
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.background = background
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def check_in(self, endpoint: str) -> None:
        if not endpoint:
            return
        if not self.background:
            self._send(endpoint)
            return
        threading.Thread(
            target=self._send, args=(endpoint,), name="mail-check-in", daemon=True
        ).start()

    def start_periodic(self, endpoint: str, interval_seconds: float) -> None:
        """Restart the periodic heartbeat against ``endpoint``."""
        self.stop()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            args=(endpoint, interval_seconds, self._stop_event),
            name="mail-check-in-interval",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2)
        self._thread = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _loop(self, endpoint: str, interval_seconds: float, stop_event: threading.Event) -> None:
        while not stop_event.wait(interval_seconds):
            self._send(endpoint)

    def _send(self, endpoint: str) -> None:
        url = build_check_in_url(endpoint, self.server_id)
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            LOGGER.warning("Check-in to %s failed: %s", url, exc)
            return
        if response.status_code >= 400:
            LOGGER.warning("Check-in to %s returned HTTP %s", url, response.status_code)
        else:
            LOGGER.debug("Checked in with %s", url)
