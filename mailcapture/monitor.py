"""Background check that the captured window still belongs to the job."""
from __future__ import annotations

import logging
import threading
from typing import Callable

from mailcapture.automation import AutomationDriver, AutomationError

LOGGER = logging.getLogger(__name__)


class WindowIdentityMonitor:
    """Poll the mail client until stopped or until the job window is lost.

    The window is intact while the mail client is frontmost and its front
    window is titled with the job guid. ``on_lost`` runs at most once, on the
    monitor thread, after which the loop ends.
    """

    def __init__(
        self,
        driver: AutomationDriver,
        expected_title: str,
        on_lost: Callable[[str], None],
        *,
        interval_seconds: float = 0.1,
    ) -> None:
        self._driver = driver
        self._expected_title = expected_title
        self._on_lost = on_lost
        self._interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._checks = 0

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._loop, name="mail-window-monitor", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def checks(self) -> int:
        return self._checks

    def check_once(self) -> str | None:
        """Return why the window is no longer the job window, or None."""
        if not self._driver.is_app_in_front():
            return "mail client lost focus"
        title = self._driver.window_title()
        if title != self._expected_title:
            return f"front window is {title!r}, expected {self._expected_title!r}"
        return None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                reason = self.check_once()
            except AutomationError as exc:
                LOGGER.warning("Window check skipped: %s", exc)
                reason = None
            self._checks += 1
            if reason and not self._stop_event.is_set():
                self._stop_event.set()
                LOGGER.error("Test window changed unexpectedly: %s", reason)
                self._on_lost(reason)
                return
            if self._stop_event.wait(self._interval_seconds):
                return
