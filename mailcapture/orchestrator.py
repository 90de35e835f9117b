"""Worker lifecycle: provisioning, queue connection, jobs and recovery."""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, List, Optional, Protocol

from mailcapture.capture import CaptureCoordinator, CaptureEvent, CaptureOutcome
from mailcapture.checkin import CheckInReporter
from mailcapture.events import EventLogger
from mailcapture.jobs import Job
from mailcapture.provisioning import ProvisioningConfig
from mailcapture.publishing import ScreenshotPublisher
from mailcapture.workqueue import JobQueue

LOGGER = logging.getLogger(__name__)


class WorkerState(str, Enum):
    NOT_STARTED = "NotStarted"
    NOT_PROVISIONED = "NotProvisioned"
    PROVISIONED = "Provisioned"
    PROVISION_FAILED = "ProvisionFailed"
    NOT_CONNECTED_TO_SOURCE = "NotConnectedToSource"
    CONNECTED_TO_SOURCE = "ConnectedToSource"
    CONNECT_TO_SOURCE_FAILED = "ConnectToSourceFailed"
    PROCESSING = "Processing"
    PROCESSED = "Processed"
    PROCESSING_FAILED = "ProcessingFailed"
    IDLING = "Idling"


class NoTestToCaptureError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("No Test to screen capture.")


class MissingProvisioningError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("No Provisioning Data.")


class ProvisioningSource(Protocol):
    def fetch(self) -> ProvisioningConfig: ...


TransitionListener = Callable[[WorkerState, WorkerState], None]


class JobOrchestrator:
    """Outer state machine of a worker.

    Every action ends in :meth:`transition`, which notifies listeners (the
    dispatcher) of the new state. Actions never call each other directly.
    """

    def __init__(
        self,
        server_id: int,
        provisioning: ProvisioningSource,
        queue: JobQueue,
        coordinator: CaptureCoordinator,
        publisher: ScreenshotPublisher,
        *,
        check_in: CheckInReporter,
        retry_delay_seconds: float = 3,
        dequeue_timeout_seconds: int = 3,
        check_in_interval_seconds: float = 6,
        event_logger: EventLogger | None = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.server_id = server_id
        self._provisioning = provisioning
        self._queue = queue
        self._coordinator = coordinator
        self._publisher = publisher
        self._check_in = check_in
        self.retry_delay_seconds = retry_delay_seconds
        self.dequeue_timeout_seconds = dequeue_timeout_seconds
        self.check_in_interval_seconds = check_in_interval_seconds
        self._event_logger = event_logger
        self._timer_factory = timer_factory

        self.state = WorkerState.NOT_STARTED
        self.provision_data: Optional[ProvisioningConfig] = None
        self.processing_test: Optional[Job] = None
        self._listeners: List[TransitionListener] = []
        self._state_lock = threading.Lock()
        self._retry_timer: threading.Timer | None = None
        self._capture_listeners: tuple | None = None

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def run(self) -> None:
        self.transition(WorkerState.NOT_PROVISIONED)

    def provision(self) -> None:
        try:
            data = self._provisioning.fetch()
        except Exception as exc:  # any failure is retried after a delay
            LOGGER.error("Provisioning failed: %s", exc)
            self.transition(WorkerState.PROVISION_FAILED)
            return
        self.provision_data = data
        if data.checkin_url:
            self._check_in.start_periodic(data.checkin_url, self.check_in_interval_seconds)
        LOGGER.info("Provisioned; reading jobs from %s", data.image_folder)
        self.transition(WorkerState.PROVISIONED)

    def connect_to_source(self) -> None:
        data = self.provision_data
        if data is None:
            raise MissingProvisioningError()
        settings = data.queue
        try:
            self._queue.connect(settings.host, settings.port, settings.database)
        except Exception as exc:  # retried through ConnectToSourceFailed
            LOGGER.error("Connecting to the work queue failed: %s", exc)
            self.transition(WorkerState.CONNECT_TO_SOURCE_FAILED)
            return
        self.transition(WorkerState.CONNECTED_TO_SOURCE)

    def get_next_test(self) -> None:
        data = self.provision_data
        try:
            if data is None:
                raise MissingProvisioningError()
            job = self._queue.pop(data.image_folder, self.dequeue_timeout_seconds)
        except Exception as exc:  # nothing to do right now; try again from Idling
            LOGGER.warning("Fetching next test failed: %s", exc)
            job = None
        if job is None:
            LOGGER.debug("No test available")
            self.transition(WorkerState.IDLING)
            return
        self.processing_test = job
        LOGGER.info("Picked up test %s (%s)", job.test_guid, job.guid)
        self.transition(WorkerState.PROCESSING)

    def generate_screenshot(self) -> None:
        job = self.processing_test
        if job is None:
            raise NoTestToCaptureError()
        self._subscribe_to_capture()
        self._coordinator.generate_screenshot(job)

    def retry_provision(self) -> None:
        self._schedule_retry(WorkerState.NOT_PROVISIONED)

    def retry_connect_to_source(self) -> None:
        self._schedule_retry(WorkerState.NOT_CONNECTED_TO_SOURCE)

    def handle_processing_error(self) -> None:
        try:
            job = self.processing_test
            if job is None:
                raise NoTestToCaptureError()
            if self.provision_data is None or not self.provision_data.image_folder:
                raise MissingProvisioningError()
            self._queue.push(self.provision_data.image_folder, job)
            LOGGER.info("Returned test %s to the queue", job.test_guid)
        except Exception as exc:  # recovery must never stall the worker
            LOGGER.error("Unable to put test back on the queue: %s", exc)
        finally:
            self.processing_test = None
            self.transition(WorkerState.IDLING)

    def transition(self, new_state: WorkerState) -> None:
        with self._state_lock:
            old_state = self.state
            self.state = new_state
        if self.provision_data is not None:
            self._check_in.check_in(self.provision_data.checkin_url)
        LOGGER.debug("State %s -> %s", old_state.value, new_state.value)
        if self._event_logger:
            self._event_logger.state_change(old_state.value, new_state.value)
        for listener in list(self._listeners):
            listener(old_state, new_state)

    def shutdown(self) -> None:
        self._cancel_retry()
        self._check_in.stop()
        self._unsubscribe_from_capture()

    def _schedule_retry(self, target: WorkerState) -> None:
        self._cancel_retry()
        LOGGER.info("Retrying in %ss (%s)", self.retry_delay_seconds, target.value)
        timer = self._timer_factory(self.retry_delay_seconds, self.transition, args=(target,))
        timer.daemon = True
        self._retry_timer = timer
        timer.start()

    def _cancel_retry(self) -> None:
        timer, self._retry_timer = self._retry_timer, None
        if timer is not None:
            timer.cancel()

    def _subscribe_to_capture(self) -> None:
        self._unsubscribe_from_capture()
        on_complete = self._on_capture_complete
        on_error = self._on_capture_error
        self._coordinator.once(CaptureEvent.COMPLETE, on_complete)
        self._coordinator.once(CaptureEvent.ERROR, on_error)
        self._capture_listeners = (on_complete, on_error)

    def _unsubscribe_from_capture(self) -> None:
        listeners, self._capture_listeners = self._capture_listeners, None
        if listeners is None:
            return
        on_complete, on_error = listeners
        self._coordinator.off(CaptureEvent.COMPLETE, on_complete)
        self._coordinator.off(CaptureEvent.ERROR, on_error)

    def _on_capture_complete(self, outcome: CaptureOutcome) -> None:
        self._unsubscribe_from_capture()
        data = self.provision_data
        try:
            if data is None:
                raise MissingProvisioningError()
            result = self._publisher.publish(outcome.directory, data)
        except Exception as exc:  # any failure requeues the job
            LOGGER.error("Publishing %s failed: %s", outcome.job.test_guid, exc)
            self.transition(WorkerState.PROCESSING_FAILED)
            return
        LOGGER.info("Test %s published with %d image(s)", result.test_guid, len(result.keys))
        self.processing_test = None
        self.transition(WorkerState.PROCESSED)

    def _on_capture_error(self, outcome: CaptureOutcome) -> None:
        self._unsubscribe_from_capture()
        LOGGER.error("Capture of %s failed: %s", outcome.job.test_guid, outcome.error)
        self.transition(WorkerState.PROCESSING_FAILED)
