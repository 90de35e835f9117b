"""Map every worker state to the orchestrator action that follows it."""
from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Dict, Tuple

from mailcapture.orchestrator import JobOrchestrator, WorkerState

LOGGER = logging.getLogger(__name__)

STATE_ACTIONS: Dict[WorkerState, str] = {
    WorkerState.NOT_STARTED: "provision",
    WorkerState.NOT_PROVISIONED: "provision",
    WorkerState.PROVISIONED: "connect_to_source",
    WorkerState.NOT_CONNECTED_TO_SOURCE: "connect_to_source",
    WorkerState.PROVISION_FAILED: "retry_provision",
    WorkerState.CONNECT_TO_SOURCE_FAILED: "retry_connect_to_source",
    WorkerState.PROCESSED: "get_next_test",
    WorkerState.CONNECTED_TO_SOURCE: "get_next_test",
    WorkerState.IDLING: "get_next_test",
    WorkerState.PROCESSING: "generate_screenshot",
    WorkerState.PROCESSING_FAILED: "handle_processing_error",
}


class UnreachableStateError(RuntimeError):
    """Raised for a state that has no action; the mapping above is incomplete."""

    def __init__(self, state: Any) -> None:
        super().__init__(f"No action for worker state {state!r}")
        self.state = state


def action_for(state: Any) -> str:
    try:
        return STATE_ACTIONS[state]
    except (KeyError, TypeError):
        raise UnreachableStateError(state) from None


def handle_state_change(app: JobOrchestrator, state: Any) -> None:
    getattr(app, action_for(state))()


class StateChangeDispatcher:
    """Run the action of each transition, one at a time, on one thread.

    Transitions may come from any thread (retry timers, the capture thread);
    they are queued and executed in order by :meth:`run_forever`, so an
    action never runs inside another action's call stack.
    """

    def __init__(self, app: JobOrchestrator) -> None:
        self.app = app
        self._pending: "queue.Queue[Tuple[WorkerState, WorkerState]]" = queue.Queue()
        app.add_listener(self._on_transition)

    def _on_transition(self, old_state: WorkerState, new_state: WorkerState) -> None:
        self._pending.put((old_state, new_state))

    @property
    def pending(self) -> int:
        return self._pending.qsize()

    def dispatch_pending(self) -> int:
        """Run every queued transition, including ones queued meanwhile."""
        handled = 0
        while True:
            try:
                _old, state = self._pending.get_nowait()
            except queue.Empty:
                return handled
            handle_state_change(self.app, state)
            handled += 1

    def dispatch_next(self, timeout: float | None = None) -> bool:
        try:
            _old, state = self._pending.get(timeout=timeout)
        except queue.Empty:
            return False
        handle_state_change(self.app, state)
        return True

    def run_forever(self, stop_event: threading.Event, poll_seconds: float = 0.5) -> None:
        while not stop_event.is_set():
            self.dispatch_next(timeout=poll_seconds)
