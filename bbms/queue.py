"""
Queue abstraction for ledger append jobs.

Alert records are written fire-and-forget: the pipeline enqueues an append
job and a worker performs it. Supports an in-memory fallback for tests/local
runs and a Redis-backed implementation for production.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


@dataclass
class AppendJob:
    """One pending ledger append."""

    collection_id: str
    fields: Dict[str, Any]
    attempts: int = 0
    not_before: float = 0.0

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "AppendJob":
        data = json.loads(raw)
        return cls(
            collection_id=data["collection_id"],
            fields=data["fields"],
            attempts=int(data.get("attempts", 0)),
            not_before=float(data.get("not_before", 0.0)),
        )


class JobQueue(Protocol):
    """Minimal queue interface for dispatching serialized jobs to workers."""

    def enqueue(self, payload: str) -> None:
        ...

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        ...


@dataclass
class InMemoryJobQueue:
    """Thread-safe FIFO queue for testing/dev."""

    items: Deque[str] = field(default_factory=deque)

    def __post_init__(self):
        self._ready = threading.Condition()

    def enqueue(self, payload: str) -> None:
        with self._ready:
            self.items.append(payload)
            self._ready.notify()

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        with self._ready:
            if block and not self.items:
                self._ready.wait(timeout=timeout)
            if not self.items:
                return None
            return self.items.popleft()

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class RedisJobQueue:
    """
    Redis list shared by the app and worker processes.

    Jobs are RPUSHed and popped from the head, so ordering is FIFO across
    every producer. A dropped connection is reopened and reported as an
    empty poll.
    """

    url: str
    queue_key: str = "bbms:alert-writes"

    def __post_init__(self):
        self.client = self._connect()

    def _connect(self) -> redis.Redis:
        return redis.Redis.from_url(self.url, decode_responses=True)

    def _reconnect(self, exc: Exception) -> None:
        logger.warning("Redis queue %s connection lost, reconnecting: %s", self.queue_key, exc)
        self.client = self._connect()

    def enqueue(self, payload: str) -> None:
        try:
            self.client.rpush(self.queue_key, payload)
        except redis_exceptions.ConnectionError as exc:
            # One retry on a fresh connection; a second failure propagates.
            self._reconnect(exc)
            self.client.rpush(self.queue_key, payload)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        try:
            if not block:
                return self.client.lpop(self.queue_key)
            result = self.client.blpop([self.queue_key], timeout=timeout or 0)
        except redis_exceptions.ConnectionError as exc:
            self._reconnect(exc)
            return None
        if result is None:
            return None
        _, payload = result
        return payload

    def __len__(self) -> int:
        return int(self.client.llen(self.queue_key))
