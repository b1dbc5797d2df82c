"""
Fan-out of device deltas to connected realtime observers.

Each connection gets an Observer: a bounded asyncio queue drained by one
sender task. A single queue plus a single sender keeps delivery FIFO per
connection, and a stuck or broken connection only ever stalls its own queue.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from bbms.alerts import AlertTransition
from bbms.reconcile import DeviceReading
from bbms.registry import ChannelRegistry

logger = logging.getLogger(__name__)

Sender = Callable[[dict], Awaitable[Any]]
Delta = Union[DeviceReading, AlertTransition]


class Observer:
    def __init__(
        self,
        connection_id: str,
        send: Sender,
        *,
        on_failure: Callable[[str], None],
        max_queue_size: int = 256,
    ):
        self.connection_id = connection_id
        self._send = send
        self._on_failure = on_failure
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.closed = False
        self._task = self._loop.create_task(self._drain())

    def offer(self, message: dict) -> None:
        """Queue a message from any thread. Never blocks."""
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._put, message)
        except RuntimeError:
            # Loop already closed.
            self.closed = True

    def _put(self, message: dict) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Outbox full for connection %s; detaching slow observer",
                self.connection_id,
            )
            self._on_failure(self.connection_id)

    async def _drain(self) -> None:
        while not self.closed:
            message = await self._queue.get()
            if self.closed:
                break
            try:
                await self._send(message)
            except Exception as exc:
                logger.warning(
                    "Send to connection %s failed: %s", self.connection_id, exc
                )
                self._on_failure(self.connection_id)
                break

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._in_loop() and asyncio.current_task() is self._task:
            # Called from the sender itself; its loop exits on the closed flag.
            return
        try:
            self._loop.call_soon_threadsafe(self._task.cancel)
        except RuntimeError:
            # Loop already closed; the task died with it.
            pass

    def _in_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    async def wait_closed(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class Broadcaster:
    def __init__(self, registry: ChannelRegistry, *, max_queue_size: int = 256):
        self.registry = registry
        self.max_queue_size = max_queue_size
        self._observers: Dict[str, Observer] = {}
        self._lock = threading.Lock()

    def attach(self, connection_id: str, send: Sender) -> Observer:
        """Register a connection. Must be called from the event loop."""
        observer = Observer(
            connection_id,
            send,
            on_failure=self.detach,
            max_queue_size=self.max_queue_size,
        )
        with self._lock:
            self._observers[connection_id] = observer
        return observer

    def detach(self, connection_id: str) -> None:
        """
        Tear down a connection: its sender first, then its subscriptions.

        Once the observer is gone, ``is_attached`` is False, so a subscribe
        racing with the teardown can see it and roll itself back.
        """
        with self._lock:
            observer = self._observers.pop(connection_id, None)
        if observer is not None:
            observer.close()
        self.registry.remove_connection(connection_id)

    def is_attached(self, connection_id: str) -> bool:
        return self.observer(connection_id) is not None

    def observer(self, connection_id: str) -> Optional[Observer]:
        with self._lock:
            return self._observers.get(connection_id)

    def send_control(self, connection_id: str, message: dict) -> None:
        """Queue a non-delta message (acks, rejections) behind earlier deltas."""
        observer = self.observer(connection_id)
        if observer is not None:
            observer.offer(message)

    def publish(self, device_id: str, delta: Delta) -> int:
        """
        Offer a delta to every current subscriber of ``device_id``.

        Safe to call from any thread. Returns the number of observers the
        delta was handed to.
        """
        message = delta.as_message()
        delivered = 0
        for subscription in self.registry.subscribers(device_id):
            observer = self.observer(subscription.connection_id)
            if observer is None or observer.closed:
                continue
            observer.offer(message)
            delivered += 1
        return delivered

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._observers)
