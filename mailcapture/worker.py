"""Entry point that wires the worker together and runs it forever."""
from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Mapping, Sequence

from mailcapture.automation import AppleScriptDriver
from mailcapture.capture import CaptureCoordinator
from mailcapture.checkin import CheckInReporter
from mailcapture.config import (
    MONITOR_INTERVAL_SECONDS,
    POLL_INTERVAL_SECONDS,
    WorkerConfig,
    WorkerConfigError,
    load_worker_config,
)
from mailcapture.dispatcher import StateChangeDispatcher
from mailcapture.events import EventLogger
from mailcapture.notify import HomeNotifier
from mailcapture.orchestrator import JobOrchestrator
from mailcapture.provisioning import ProvisioningClient
from mailcapture.publishing import ScreenshotPublisher
from mailcapture.source import RenderedSource
from mailcapture.workqueue import JobQueue

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Capture rendering tests in Apple Mail and publish the screenshots."
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--capture-root",
        type=Path,
        help="Directory holding temp-captures/, eml/ and logs/ (overrides CAPTURE_ROOT)",
    )
    return parser.parse_args(argv)


def _debug_enabled(args: argparse.Namespace | None, config: WorkerConfig) -> bool:
    if args and getattr(args, "debug", False):
        return True
    return config.debug


def _configure_logging(debug: bool, level_name: str = "info") -> None:
    level = logging.DEBUG if debug else getattr(logging, level_name.upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


@contextmanager
def _attach_error_log(path: Path | None) -> Iterator[None]:
    if not path:
        yield
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.ERROR)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    try:
        yield
    finally:
        root.removeHandler(handler)
        handler.close()


def build_orchestrator(config: WorkerConfig) -> JobOrchestrator:
    """Construct the worker with production collaborators."""
    event_logger = EventLogger(config.events_log)
    driver = AppleScriptDriver(config.target_app, window_width=config.window_width)
    coordinator = CaptureCoordinator(
        driver,
        RenderedSource(config.eml_dir),
        config.screenshot_dir,
        tile_height=config.tile_height,
        chunk_to_scroll=config.chunk_to_scroll,
        poll_interval_seconds=POLL_INTERVAL_SECONDS,
        poll_timeout_seconds=config.poll_timeout_seconds,
        settle_delay_seconds=config.settle_delay_seconds,
        monitor_interval_seconds=MONITOR_INTERVAL_SECONDS,
        event_logger=event_logger,
    )
    return JobOrchestrator(
        config.server_id,
        ProvisioningClient(config),
        JobQueue(),
        coordinator,
        ScreenshotPublisher(HomeNotifier(config.server_id)),
        check_in=CheckInReporter(config.server_id),
        retry_delay_seconds=config.retry_delay_seconds,
        dequeue_timeout_seconds=config.dequeue_timeout_seconds,
        check_in_interval_seconds=config.check_in_interval_seconds,
        event_logger=event_logger,
    )


def run_worker(config: WorkerConfig, stop_event: threading.Event | None = None) -> None:
    stop_event = stop_event or threading.Event()
    app = build_orchestrator(config)
    dispatcher = StateChangeDispatcher(app)
    LOGGER.info("Worker %s starting (captures in %s)", config.server_id, config.screenshot_dir)
    app.run()
    try:
        dispatcher.run_forever(stop_event)
    finally:
        app.shutdown()


def main(argv: Sequence[str] | None = None, env: Mapping[str, str] | None = None) -> int:
    args = parse_args(argv)
    env = dict(env if env is not None else os.environ)
    if args.capture_root:
        env["CAPTURE_ROOT"] = str(args.capture_root)
    try:
        config = load_worker_config(env)
    except WorkerConfigError as exc:
        _configure_logging(bool(args.debug))
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    _configure_logging(_debug_enabled(args, config), config.log_level)
    with _attach_error_log(config.error_log):
        try:
            run_worker(config)
        except KeyboardInterrupt:
            LOGGER.info("Interrupted; shutting down")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:  # pragma: no cover - last-resort logging
        print(f"Worker crashed: {exc}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)
