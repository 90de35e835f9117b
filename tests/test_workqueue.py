"""Tests for the Redis-backed job queue."""
from __future__ import annotations

import pytest
import redis

from fakes import FakeRedis, make_job
from mailcapture.jobs import JobFormatError
from mailcapture.workqueue import JobQueue, QueueError, QueueNotConnectedError


def test_connect_builds_client_and_pings() -> None:
    client = FakeRedis()
    queue = JobQueue(client_factory=client)

    queue.connect("redis.local", 6380, 2)

    assert queue.connected
    assert client.kwargs == {"host": "redis.local", "port": 6380, "db": 2}


def test_unreachable_queue_is_not_kept() -> None:
    queue = JobQueue(client_factory=FakeRedis(ping_error=redis.ConnectionError("refused")))

    with pytest.raises(QueueError, match="redis.local:6380/2"):
        queue.connect("redis.local", 6380, 2)
    assert not queue.connected


def test_reconnect_closes_previous_client() -> None:
    first, second = FakeRedis(), FakeRedis()
    clients = iter([first, second])
    queue = JobQueue(client_factory=lambda **kwargs: next(clients)(**kwargs))

    queue.connect("a", 1, 0)
    queue.connect("b", 2, 0)

    assert first.closed and not second.closed


def test_pop_and_push_round_trip_through_list() -> None:
    client = FakeRedis()
    queue = JobQueue(client_factory=client)
    queue.connect("localhost", 6379, 0)
    job = make_job(subject="Weekly digest")

    queue.push("applemail14", job)
    assert queue.pop("applemail14", 3) == job
    assert queue.pop("applemail14", 3) is None
    assert client.blpop_calls[-1] == (("applemail14",), 3)


def test_pop_rejects_malformed_records() -> None:
    client = FakeRedis()
    queue = JobQueue(client_factory=client)
    queue.connect("localhost", 6379, 0)
    client.lists["applemail14"].append(b'{"guid": "x"}')

    with pytest.raises(JobFormatError):
        queue.pop("applemail14", 1)


def test_redis_errors_become_queue_errors() -> None:
    client = FakeRedis()
    queue = JobQueue(client_factory=client)
    queue.connect("localhost", 6379, 0)

    def broken(*_args, **_kwargs):
        raise redis.ConnectionError("reset")

    client.blpop = broken  # type: ignore[assignment]
    client.rpush = broken  # type: ignore[assignment]

    with pytest.raises(QueueError, match="dequeue"):
        queue.pop("applemail14", 1)
    with pytest.raises(QueueError, match="requeue"):
        queue.push("applemail14", make_job())


def test_use_before_connect() -> None:
    queue = JobQueue(client_factory=FakeRedis())

    with pytest.raises(QueueNotConnectedError):
        queue.pop("applemail14", 1)
