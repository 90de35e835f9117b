"""Tests for the worker lifecycle state machine."""
from __future__ import annotations

import logging
from pathlib import Path

import pytest
import redis

from fakes import (
    FakeCheckIn,
    FakeCoordinator,
    FakePublisher,
    FakeRedis,
    FakeTimer,
    make_job,
    make_provisioning,
)
from mailcapture.capture import CaptureEvent
from mailcapture.jobs import Job
from mailcapture.orchestrator import (
    JobOrchestrator,
    MissingProvisioningError,
    NoTestToCaptureError,
    WorkerState,
)
from mailcapture.provisioning import ProvisioningError
from mailcapture.publishing import PublishError
from mailcapture.workqueue import JobQueue


class FakeProvisioning:
    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result if result is not None else make_provisioning()
        self.error = error
        self.calls = 0

    def fetch(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


def _make_app(
    *,
    provisioning: FakeProvisioning | None = None,
    redis_client: FakeRedis | None = None,
    publisher: FakePublisher | None = None,
):
    FakeTimer.created.clear()
    redis_client = redis_client or FakeRedis()
    coordinator = FakeCoordinator()
    check_in = FakeCheckIn()
    app = JobOrchestrator(
        7,
        provisioning or FakeProvisioning(),
        JobQueue(client_factory=redis_client),
        coordinator,
        publisher or FakePublisher(),
        check_in=check_in,
        timer_factory=FakeTimer,
    )
    transitions: list[tuple[WorkerState, WorkerState]] = []
    app.add_listener(lambda old, new: transitions.append((old, new)))
    return app, coordinator, check_in, redis_client, transitions


def _connected_app(**kwargs):
    app, coordinator, check_in, redis_client, transitions = _make_app(**kwargs)
    app.provision()
    app.connect_to_source()
    return app, coordinator, check_in, redis_client, transitions


def test_run_moves_to_not_provisioned() -> None:
    app, _, _, _, transitions = _make_app()

    app.run()

    assert app.state is WorkerState.NOT_PROVISIONED
    assert transitions == [(WorkerState.NOT_STARTED, WorkerState.NOT_PROVISIONED)]


def test_provision_failure_retries_after_delay() -> None:
    provisioning = FakeProvisioning(error=ProvisioningError("HTTP 500"))
    app, _, check_in, _, _ = _make_app(provisioning=provisioning)

    app.provision()
    assert app.state is WorkerState.PROVISION_FAILED
    assert app.provision_data is None
    assert check_in.periodic == []

    app.retry_provision()
    timer = FakeTimer.created[-1]
    assert timer.interval == 3
    assert timer.started and timer.daemon
    assert app.state is WorkerState.PROVISION_FAILED

    timer.fire()
    assert app.state is WorkerState.NOT_PROVISIONED


def test_provision_success_starts_periodic_check_in() -> None:
    app, _, check_in, _, _ = _make_app()

    app.provision()

    assert app.state is WorkerState.PROVISIONED
    assert app.provision_data.image_folder == "applemail14"
    assert check_in.periodic == [("https://home.example.com/checkin", 6)]


def test_connect_requires_provisioning() -> None:
    app, _, _, _, _ = _make_app()

    with pytest.raises(MissingProvisioningError, match="No Provisioning Data."):
        app.connect_to_source()


def test_connect_uses_provisioned_queue_settings() -> None:
    app, _, _, redis_client, _ = _make_app()
    app.provision()

    app.connect_to_source()

    assert app.state is WorkerState.CONNECTED_TO_SOURCE
    assert redis_client.kwargs == {"host": "redis.local", "port": 6380, "db": 2}


def test_connect_failure_retries_after_delay() -> None:
    redis_client = FakeRedis(ping_error=redis.ConnectionError("refused"))
    app, _, _, _, _ = _make_app(redis_client=redis_client)
    app.provision()

    app.connect_to_source()
    assert app.state is WorkerState.CONNECT_TO_SOURCE_FAILED

    app.retry_connect_to_source()
    FakeTimer.created[-1].fire()
    assert app.state is WorkerState.NOT_CONNECTED_TO_SOURCE


def test_empty_queue_idles_without_job() -> None:
    app, _, _, redis_client, _ = _connected_app()

    app.get_next_test()

    assert app.state is WorkerState.IDLING
    assert app.processing_test is None
    assert redis_client.blpop_calls == [(("applemail14",), 3)]


def test_dequeue_error_idles() -> None:
    app, _, _, redis_client, _ = _connected_app()
    redis_client.lists["applemail14"].append(b"not json")

    app.get_next_test()

    assert app.state is WorkerState.IDLING
    assert app.processing_test is None


def test_next_job_is_held_in_flight() -> None:
    app, _, _, redis_client, _ = _connected_app()
    job = make_job()
    redis_client.rpush("applemail14", job.to_json())

    app.get_next_test()

    assert app.state is WorkerState.PROCESSING
    assert app.processing_test == job


def test_generate_screenshot_requires_job() -> None:
    app, _, _, _, _ = _connected_app()

    with pytest.raises(NoTestToCaptureError, match="No Test to screen capture."):
        app.generate_screenshot()


def test_completed_capture_is_published(caplog) -> None:
    publisher = FakePublisher()
    app, coordinator, _, redis_client, _ = _connected_app(publisher=publisher)
    redis_client.rpush("applemail14", make_job().to_json())
    app.get_next_test()

    app.generate_screenshot()
    assert coordinator.started[-1].test_guid == "ss-123"
    with caplog.at_level(logging.INFO, logger="mailcapture.orchestrator"):
        coordinator.finish(CaptureEvent.COMPLETE)

    assert app.state is WorkerState.PROCESSED
    assert app.processing_test is None
    assert publisher.published == [(Path("/captures/ss-123"), app.provision_data)]
    assert coordinator.listeners[CaptureEvent.ERROR] == []
    assert "Test ss-123 published with 0 image(s)" in caplog.text


def test_failed_publish_requeues_job() -> None:
    publisher = FakePublisher(error=PublishError("S3 down"))
    app, coordinator, _, redis_client, _ = _connected_app(publisher=publisher)
    job = make_job(guid_in_subject={"applemail14": 88})
    redis_client.rpush("applemail14", job.to_json())
    app.get_next_test()
    app.generate_screenshot()

    coordinator.finish(CaptureEvent.COMPLETE)
    assert app.state is WorkerState.PROCESSING_FAILED

    app.handle_processing_error()
    assert app.state is WorkerState.IDLING
    assert len(redis_client.lists["applemail14"]) == 1


def test_unexpected_publish_exception_requeues_job() -> None:
    publisher = FakePublisher(error=KeyError("thumb_width"))
    app, coordinator, _, redis_client, _ = _connected_app(publisher=publisher)
    redis_client.rpush("applemail14", make_job().to_json())
    app.get_next_test()
    app.generate_screenshot()

    coordinator.finish(CaptureEvent.COMPLETE)
    assert app.state is WorkerState.PROCESSING_FAILED

    app.handle_processing_error()
    assert app.state is WorkerState.IDLING
    assert len(redis_client.lists["applemail14"]) == 1


def test_capture_error_requeues_identical_job() -> None:
    app, coordinator, _, redis_client, _ = _connected_app()
    job = make_job(subject="Welcome", guid_in_subject={"applemail14": 88}, test_id=5)
    redis_client.rpush("applemail14", job.to_json())
    app.get_next_test()
    app.generate_screenshot()

    coordinator.finish(CaptureEvent.ERROR, error=RuntimeError("timeout"))
    assert app.state is WorkerState.PROCESSING_FAILED
    assert coordinator.listeners[CaptureEvent.COMPLETE] == []

    app.handle_processing_error()
    assert app.state is WorkerState.IDLING
    assert app.processing_test is None

    app.get_next_test()
    assert app.state is WorkerState.PROCESSING
    assert app.processing_test == job
    assert isinstance(app.processing_test, Job)


def test_processing_error_without_job_still_idles() -> None:
    app, _, _, redis_client, _ = _connected_app()

    app.handle_processing_error()

    assert app.state is WorkerState.IDLING
    assert redis_client.lists["applemail14"] == []


def test_processing_error_without_queue_key_still_idles() -> None:
    provisioning = FakeProvisioning(result=make_provisioning(image_folder=""))
    app, _, _, redis_client, _ = _connected_app(provisioning=provisioning)
    app.processing_test = make_job()

    app.handle_processing_error()

    assert app.state is WorkerState.IDLING
    assert app.processing_test is None


def test_check_in_follows_every_transition_once_provisioned() -> None:
    app, _, check_in, _, _ = _make_app()

    app.run()
    assert check_in.check_ins == []

    app.provision()
    app.connect_to_source()
    app.get_next_test()

    assert check_in.check_ins == ["https://home.example.com/checkin"] * 3


def test_new_retry_cancels_pending_one_and_shutdown_cancels_all() -> None:
    app, _, check_in, _, _ = _make_app()

    app.retry_provision()
    first = FakeTimer.created[-1]
    app.retry_provision()
    second = FakeTimer.created[-1]

    assert first.cancelled and not second.cancelled

    app.shutdown()
    assert second.cancelled
    assert check_in.stopped == 1
