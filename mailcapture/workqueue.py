"""Redis list holding the jobs shared by every worker."""
from __future__ import annotations

import logging
from typing import Callable

import redis

from mailcapture.jobs import Job

LOGGER = logging.getLogger(__name__)


class QueueError(RuntimeError):
    """Raised when the work queue cannot be reached or returns bad data."""


class QueueNotConnectedError(QueueError):
    """Raised when the queue is used before :meth:`JobQueue.connect`."""


class JobQueue:
    """Blocking pop and push of JSON job records on a Redis list."""

    def __init__(self, client_factory: Callable[..., redis.Redis] = redis.Redis) -> None:
        self._client_factory = client_factory
        self._client: redis.Redis | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self, host: str, port: int, database: int) -> None:
        """Open a new client; an existing one is closed rather than reused."""
        self.close()
        client = self._client_factory(host=host, port=port, db=database)
        try:
            client.ping()
        except redis.RedisError as exc:
            raise QueueError(f"unable to reach queue at {host}:{port}/{database}: {exc}") from exc
        self._client = client
        LOGGER.info("Connected to queue at %s:%s/%s", host, port, database)

    def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except redis.RedisError as exc:
                LOGGER.debug("Ignoring error closing queue client: %s", exc)

    def pop(self, key: str, timeout_seconds: int) -> Job | None:
        """Wait up to ``timeout_seconds`` for the next job on ``key``."""
        client = self._require_client()
        try:
            item = client.blpop([key], timeout=timeout_seconds)
        except redis.RedisError as exc:
            raise QueueError(f"dequeue from {key} failed: {exc}") from exc
        if item is None:
            return None
        _key, raw = item
        return Job.from_json(raw)

    def push(self, key: str, job: Job) -> None:
        client = self._require_client()
        try:
            client.rpush(key, job.to_json())
        except redis.RedisError as exc:
            raise QueueError(f"requeue to {key} failed: {exc}") from exc

    def _require_client(self) -> redis.Redis:
        if self._client is None:
            raise QueueNotConnectedError("Not connected to the work queue")
        return self._client
