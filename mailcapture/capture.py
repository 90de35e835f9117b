"""Per-job capture of a rendered test in the mail client."""
from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from mailcapture.automation import AutomationDriver, AutomationError
from mailcapture.events import EventLogger
from mailcapture.geometry import (
    TOP_SCROLL_POSITION,
    Frame,
    Tile,
    needs_scrolling,
    next_scroll_pixels,
    pixels_to_scroll_position,
    plan_next_tile,
    plan_single_tile,
    total_capturable_height,
)
from mailcapture.jobs import Job
from mailcapture.monitor import WindowIdentityMonitor
from mailcapture.polling import poll_until
from mailcapture.source import RenderedSource

LOGGER = logging.getLogger(__name__)
METADATA_FILENAME = "meta.json"
CORRUPTED_EXIT_STATUS = 1


class CaptureEvent(str, Enum):
    APP_RUNNING = "appRunning"
    APP_NOT_RUNNING = "appNotRunning"
    APP_OUT_OF_FOCUS = "appOutOfFocus"
    APP_READY = "appReady"
    TEST_OPEN = "testOpen"
    DIMENSIONS_RECEIVED = "dimensionsReceived"
    CAPTURE_NEXT_CHUNK = "captureNextChunk"
    CAPTURING_DONE = "capturingDone"
    SCREENSHOT_CORRUPTED = "screenshotCorrupted"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = {CaptureEvent.COMPLETE, CaptureEvent.ERROR}


@dataclass
class CaptureOutcome:
    """What listeners receive for each event of a capture."""

    event: CaptureEvent
    job: Job
    directory: Path
    tiles: Tuple[Path, ...] = ()
    error: BaseException | None = None


CaptureListener = Callable[[CaptureOutcome], None]


class CaptureInProgressError(RuntimeError):
    """Raised when a second capture is requested while one is running."""


class CaptureCorruptedError(RuntimeError):
    """Raised internally when required geometry is missing mid-capture."""


def terminate_process(status: int) -> None:
    """Flush logs and end the process immediately, from any thread."""
    LOGGER.critical("Terminating worker with status %s", status)
    logging.shutdown()
    os._exit(status)


class CaptureCoordinator:
    """Run one job through the mail client and leave ordered tiles on disk.

    Each handler performs the work of one state and returns the next event.
    Listeners registered with :meth:`on` or :meth:`once` see every event; a
    capture ends with exactly one ``complete`` or ``error``, unless the window
    monitor detects corruption, in which case partial output is removed and
    ``exit_process(1)`` is called instead.
    """

    def __init__(
        self,
        driver: AutomationDriver,
        source: RenderedSource,
        screenshot_dir: Path,
        *,
        tile_height: int = 600,
        chunk_to_scroll: int = 550,
        poll_interval_seconds: float = 0.1,
        poll_timeout_seconds: float = 10,
        settle_delay_seconds: float = 3,
        monitor_interval_seconds: float = 0.1,
        exit_process: Callable[[int], None] = terminate_process,
        event_logger: EventLogger | None = None,
        clock: Callable[[], float] | None = None,
        sleeper: Callable[[float], None] | None = None,
    ) -> None:
        self._driver = driver
        self._source = source
        self.screenshot_dir = screenshot_dir
        self.tile_height = tile_height
        self.chunk_to_scroll = chunk_to_scroll
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self.settle_delay_seconds = settle_delay_seconds
        self.monitor_interval_seconds = monitor_interval_seconds
        self._exit_process = exit_process
        self._event_logger = event_logger
        self._clock = clock or time.monotonic
        self._sleeper = sleeper or time.sleep

        self._listeners: Dict[CaptureEvent, List[Tuple[CaptureListener, bool]]] = {}
        self._listener_lock = threading.Lock()
        self._terminal_lock = threading.Lock()
        self._terminal_owner: str | None = None
        self._halted = threading.Event()
        self._thread: threading.Thread | None = None
        self._monitor: WindowIdentityMonitor | None = None
        self._job: Job | None = None
        self._tiles: List[Path] = []
        self._reset_state()

        self._handlers: Dict[CaptureEvent, Callable[[], CaptureEvent]] = {
            CaptureEvent.APP_NOT_RUNNING: self._handle_app_not_running,
            CaptureEvent.APP_RUNNING: self._handle_app_running,
            CaptureEvent.APP_OUT_OF_FOCUS: self._handle_app_out_of_focus,
            CaptureEvent.APP_READY: self._handle_app_ready,
            CaptureEvent.TEST_OPEN: self._handle_test_open,
            CaptureEvent.DIMENSIONS_RECEIVED: self._handle_dimensions_received,
            CaptureEvent.CAPTURE_NEXT_CHUNK: self._handle_capture_next_chunk,
            CaptureEvent.CAPTURING_DONE: self._handle_capturing_done,
        }

    # listeners

    def on(self, event: CaptureEvent, listener: CaptureListener) -> None:
        with self._listener_lock:
            self._listeners.setdefault(event, []).append((listener, False))

    def once(self, event: CaptureEvent, listener: CaptureListener) -> None:
        with self._listener_lock:
            self._listeners.setdefault(event, []).append((listener, True))

    def off(self, event: CaptureEvent, listener: CaptureListener) -> None:
        with self._listener_lock:
            entries = self._listeners.get(event, [])
            self._listeners[event] = [entry for entry in entries if entry[0] != listener]

    # public API

    @property
    def job(self) -> Job | None:
        return self._job

    @property
    def busy(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def job_directory(self, job: Job) -> Path:
        return self.screenshot_dir / job.test_guid

    def generate_screenshot(self, job: Job) -> None:
        """Start capturing ``job`` on a background thread."""
        if self.busy:
            raise CaptureInProgressError(f"capture of {self._job and self._job.guid} still running")
        self._thread = threading.Thread(
            target=self.run_capture, args=(job,), name="mail-capture", daemon=True
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread:
            self._thread.join(timeout)

    def run_capture(self, job: Job) -> CaptureEvent:
        """Capture ``job`` on the calling thread and return the final event."""
        self._job = job
        self._reset_state()
        self._tiles = []
        self._halted.clear()
        with self._terminal_lock:
            self._terminal_owner = None
        LOGGER.info("Capturing test %s", job.test_guid)

        try:
            event = self._start()
            while event not in TERMINAL_EVENTS:
                if self._halted.is_set():
                    return CaptureEvent.SCREENSHOT_CORRUPTED
                self._emit(event)
                if event is CaptureEvent.SCREENSHOT_CORRUPTED:
                    self._handle_screenshot_corrupted("capture geometry missing")
                    return CaptureEvent.SCREENSHOT_CORRUPTED
                event = self._handlers[event]()
        except Exception as exc:  # any failure ends the capture with an error event
            if self._halted.is_set():
                LOGGER.debug("Ignoring %s after corruption: %s", type(exc).__name__, exc)
                return CaptureEvent.SCREENSHOT_CORRUPTED
            return self._fail(exc)
        if self._halted.is_set():
            return CaptureEvent.SCREENSHOT_CORRUPTED
        self._emit(event)
        return event

    # state handlers

    def _start(self) -> CaptureEvent:
        job = self._require_job()
        directory = self.job_directory(job)
        if directory.exists():
            LOGGER.warning("Removing stale capture directory %s", directory)
            shutil.rmtree(directory)
        self._source.write(job)
        if self._read(self._driver.is_app_running):
            return CaptureEvent.APP_RUNNING
        return CaptureEvent.APP_NOT_RUNNING

    def _handle_app_not_running(self) -> CaptureEvent:
        def _launched() -> bool:
            self._driver.start_app()
            return self._read(self._driver.is_app_running)

        self._poll(_launched, "mail client not running")
        return CaptureEvent.APP_RUNNING

    def _handle_app_running(self) -> CaptureEvent:
        if self._read(self._driver.is_app_in_front):
            return CaptureEvent.APP_READY
        return CaptureEvent.APP_OUT_OF_FOCUS

    def _handle_app_out_of_focus(self) -> CaptureEvent:
        def _focused() -> bool:
            self._driver.bring_app_to_front()
            return self._read(self._driver.is_app_in_front)

        self._poll(_focused, "mail client not in front")
        return CaptureEvent.APP_READY

    def _handle_app_ready(self) -> CaptureEvent:
        job = self._require_job()
        self._driver.open_source(self._source.path_for(job))
        if self.settle_delay_seconds > 0:
            self._sleeper(self.settle_delay_seconds)
        return CaptureEvent.TEST_OPEN

    def _handle_test_open(self) -> CaptureEvent:
        job = self._require_job()
        LOGGER.debug("Test %s is open", job.test_guid)
        self._start_monitor(job)
        self._driver.prepare_window()
        self._driver.scroll_to_top()
        self._window = self._driver.window_frame()
        self._scroll = self._driver.scroll_frame()
        self._header_height = self._driver.header_height()
        LOGGER.debug(
            "Window %s, scroll %s, header %s", self._window, self._scroll, self._header_height
        )
        return CaptureEvent.DIMENSIONS_RECEIVED

    def _handle_dimensions_received(self) -> CaptureEvent:
        if self._window is None or self._scroll is None or self._header_height is None:
            return CaptureEvent.SCREENSHOT_CORRUPTED
        if needs_scrolling(self._window, self._scroll):
            LOGGER.info("Capturing screenshot by chunks")
            return CaptureEvent.CAPTURE_NEXT_CHUNK
        LOGGER.info("Capturing screenshot in one shot")
        self._capture(plan_single_tile(self._window, self._header_height))
        return CaptureEvent.CAPTURING_DONE

    def _handle_capture_next_chunk(self) -> CaptureEvent:
        window, scroll, header = self._window, self._scroll, self._header_height
        if window is None or scroll is None or header is None or self._job is None:
            return CaptureEvent.SCREENSHOT_CORRUPTED
        tile = plan_next_tile(
            window,
            scroll,
            iteration=self.scroll_iteration,
            captured_pixels=self.captured_pixels,
            scroll_position=self.scroll_position,
            tile_height=self.tile_height,
            chunk_to_scroll=self.chunk_to_scroll,
            header_height=header,
        )
        LOGGER.debug("Capturing chunk %s: %s", tile.portion_id, tile)
        self._capture(tile)

        total = total_capturable_height(scroll, header)
        self.captured_pixels = min(total, self.captured_pixels + tile.height)
        if self.scroll_position >= 1.0 or self.captured_pixels >= total:
            return CaptureEvent.CAPTURING_DONE

        self.scrolled_pixels = next_scroll_pixels(
            header, self.captured_pixels, self.tile_height, self.chunk_to_scroll
        )
        self.scroll_position = pixels_to_scroll_position(
            self.scrolled_pixels, scroll.height, window.height
        )
        self._driver.scroll_to(self.scroll_position)
        self.scroll_iteration += 1
        return CaptureEvent.CAPTURE_NEXT_CHUNK

    def _handle_capturing_done(self) -> CaptureEvent:
        job = self._require_job()
        self._stop_monitor()
        if not self._claim_terminal("capture"):
            return CaptureEvent.SCREENSHOT_CORRUPTED
        self._driver.close_window()
        self._source.delete(job)
        self._write_metadata(job)
        self._reset_state()
        LOGGER.info("Screen capture done for %s (%s tiles)", job.test_guid, len(self._tiles))
        return CaptureEvent.COMPLETE

    def _handle_screenshot_corrupted(self, reason: str) -> None:
        self._stop_monitor()
        if not self._claim_terminal("capture"):
            return
        self._corrupt(reason)

    def _on_window_lost(self, reason: str) -> None:
        if not self._claim_terminal("monitor"):
            return
        self._emit(CaptureEvent.SCREENSHOT_CORRUPTED)
        self._corrupt(reason)

    # helpers

    def _corrupt(self, reason: str) -> None:
        self._halted.set()
        job = self._job
        LOGGER.error("Screenshot corrupted for %s: %s", job and job.test_guid, reason)
        self._log_event("corrupted", reason)
        try:
            self._stop_monitor()
            if job is not None:
                self._source.delete(job)
                self._remove_tiles(job)
        except OSError as exc:
            LOGGER.error("Cleanup after corrupted capture failed: %s", exc)
        finally:
            self._exit_process(CORRUPTED_EXIT_STATUS)

    def _fail(self, exc: BaseException) -> CaptureEvent:
        self._stop_monitor()
        if not self._claim_terminal("capture"):
            return CaptureEvent.SCREENSHOT_CORRUPTED
        job = self._require_job()
        LOGGER.error("Capture of %s failed: %s", job.test_guid, exc)
        try:
            self._source.delete(job)
            self._remove_tiles(job)
        except OSError as cleanup_exc:
            LOGGER.warning("Cleanup after failed capture incomplete: %s", cleanup_exc)
        tiles = tuple(self._tiles)
        self._reset_state()
        self._emit(CaptureEvent.ERROR, error=exc, tiles=tiles)
        return CaptureEvent.ERROR

    def _claim_terminal(self, owner: str) -> bool:
        with self._terminal_lock:
            if self._terminal_owner is None:
                self._terminal_owner = owner
            return self._terminal_owner == owner

    def _start_monitor(self, job: Job) -> None:
        self._stop_monitor()
        self._monitor = WindowIdentityMonitor(
            self._driver,
            job.guid,
            self._on_window_lost,
            interval_seconds=self.monitor_interval_seconds,
        )
        self._monitor.start()

    def _stop_monitor(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()

    def _capture(self, tile: Tile) -> None:
        job = self._require_job()
        if self._halted.is_set():
            return
        path = self._driver.capture_region(tile, self.job_directory(job))
        self._tiles.append(path)

    def _poll(self, predicate: Callable[[], bool], description: str) -> None:
        poll_until(
            predicate,
            description=description,
            interval_seconds=self.poll_interval_seconds,
            timeout_seconds=self.poll_timeout_seconds,
            clock=self._clock,
            sleeper=self._sleeper,
        )

    def _read(self, query: Callable[[], bool]) -> bool:
        try:
            return query()
        except AutomationError as exc:
            LOGGER.warning("State query failed, assuming no: %s", exc)
            return False

    def _write_metadata(self, job: Job) -> None:
        directory = self.job_directory(job)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / METADATA_FILENAME).write_text(
            json.dumps(job.metadata()), encoding="utf-8"
        )

    def _remove_tiles(self, job: Job) -> None:
        directory = self.job_directory(job)
        LOGGER.debug("Removing captured tiles in %s", directory)
        if directory.exists():
            shutil.rmtree(directory)

    def _require_job(self) -> Job:
        if self._job is None:
            raise CaptureCorruptedError("no job loaded")
        return self._job

    def _reset_state(self) -> None:
        self.scroll_iteration = 1
        self.captured_pixels = 0
        self.scroll_position = TOP_SCROLL_POSITION
        self.scrolled_pixels = 0
        self._window: Optional[Frame] = None
        self._scroll: Optional[Frame] = None
        self._header_height: Optional[int] = None

    def _emit(
        self,
        event: CaptureEvent,
        *,
        error: BaseException | None = None,
        tiles: Tuple[Path, ...] | None = None,
    ) -> None:
        job = self._require_job()
        LOGGER.debug("Capture event %s", event.value)
        self._log_event(event.value)
        outcome = CaptureOutcome(
            event=event,
            job=job,
            directory=self.job_directory(job),
            tiles=tuple(self._tiles) if tiles is None else tiles,
            error=error,
        )
        with self._listener_lock:
            entries = list(self._listeners.get(event, []))
            self._listeners[event] = [entry for entry in entries if not entry[1]]
        for listener, _once in entries:
            try:
                listener(outcome)
            except Exception:
                LOGGER.exception("Capture listener for %s failed", event.value)

    def _log_event(self, event: str, detail: str | None = None) -> None:
        if self._event_logger and self._job is not None:
            self._event_logger.capture_event(event, self._job.test_guid, detail)
