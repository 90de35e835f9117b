"""Deadline-bounded polling used while waiting on the mail client."""
from __future__ import annotations

import time
from typing import Callable

MIN_POLL_SECONDS = 0.01


class PollTimeoutError(RuntimeError):
    """Raised when a polled condition does not hold before the deadline."""

    def __init__(self, description: str, timeout_seconds: float) -> None:
        super().__init__(f"{description} (gave up after {timeout_seconds:g}s)")
        self.description = description
        self.timeout_seconds = timeout_seconds


def poll_until(
    predicate: Callable[[], bool],
    *,
    description: str,
    interval_seconds: float,
    timeout_seconds: float,
    clock: Callable[[], float] | None = None,
    sleeper: Callable[[float], None] | None = None,
) -> int:
    """Call ``predicate`` every ``interval_seconds`` until it returns True.

    Returns the number of attempts it took. Errors raised by ``predicate``
    propagate. Once the deadline passes the loop stops without another
    attempt and raises :class:`PollTimeoutError`.
    """
    clock = clock or time.monotonic
    sleeper = sleeper or time.sleep
    interval = max(MIN_POLL_SECONDS, interval_seconds)
    deadline = clock() + timeout_seconds
    attempts = 0

    while True:
        attempts += 1
        if predicate():
            return attempts
        if clock() + interval > deadline:
            raise PollTimeoutError(description, timeout_seconds)
        sleeper(interval)
