"""Tests for the worker entry point."""
from __future__ import annotations

import logging
import threading

from mailcapture import worker
from mailcapture.orchestrator import JobOrchestrator, WorkerState


def _env(tmp_path, **overrides: str) -> dict[str, str]:
    env = {
        "SERVER_ID": "14",
        "EMAIL_ADDRESS": "seed@example.com",
        "UPLOAD_USER": "uploader",
        "UPLOAD_PASSWORD": "hunter22",
        "PROVISION_URL": "https://home.example.com/provision",
        "CAPTURE_ROOT": str(tmp_path),
    }
    env.update(overrides)
    return env


def test_parse_args() -> None:
    args = worker.parse_args(["--debug", "--capture-root", "/tmp/mail"])

    assert args.debug is True
    assert str(args.capture_root) == "/tmp/mail"


def test_invalid_configuration_exits_nonzero(tmp_path, caplog) -> None:
    env = _env(tmp_path)
    env.pop("UPLOAD_PASSWORD")

    with caplog.at_level(logging.ERROR):
        assert worker.main([], env=env) == 1

    assert "UPLOAD_PASSWORD is required" in caplog.text


def test_capture_root_flag_overrides_environment(tmp_path, monkeypatch) -> None:
    seen = {}

    def fake_run_worker(config, stop_event=None) -> None:
        seen["config"] = config
        raise KeyboardInterrupt

    monkeypatch.setattr(worker, "run_worker", fake_run_worker)

    assert worker.main(["--capture-root", str(tmp_path / "alt")], env=_env(tmp_path)) == 0
    assert seen["config"].capture_root == tmp_path / "alt"
    assert (tmp_path / "alt" / "logs").is_dir()


def test_build_orchestrator_wires_configuration(tmp_path) -> None:
    config = worker.load_worker_config(_env(tmp_path, RETRY_DELAY_SECONDS="9"))

    app = worker.build_orchestrator(config)

    assert isinstance(app, JobOrchestrator)
    assert app.server_id == 14
    assert app.retry_delay_seconds == 9
    assert app.state is WorkerState.NOT_STARTED
    assert config.events_log.exists()


def test_run_worker_starts_and_shuts_down(tmp_path) -> None:
    config = worker.load_worker_config(_env(tmp_path))
    stop = threading.Event()
    stop.set()

    worker.run_worker(config, stop)

    assert "NotProvisioned" in config.events_log.read_text(encoding="utf-8")


def test_error_log_receives_errors_only(tmp_path) -> None:
    path = tmp_path / "logs" / "worker-errors.log"
    logger = logging.getLogger("mailcapture.test")

    with worker._attach_error_log(path):
        logger.error("capture failed")
        logger.warning("just a warning")

    text = path.read_text(encoding="utf-8")
    assert "capture failed" in text
    assert "just a warning" not in text
