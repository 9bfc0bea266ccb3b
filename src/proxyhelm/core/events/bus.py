"""Connection lifecycle notifications.

Status callbacks run synchronously inside the engines, so the orchestrator
only queues events here. A single dispatcher task hands them to listeners in
publish order; a slow listener delays later events but never the engines.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from proxyhelm.core.events.types import EventType

logger = structlog.get_logger(__name__)

EventListener = Callable[["Event"], Awaitable[None]]


@dataclass(frozen=True)
class Event:
    """One lifecycle notification."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}


@dataclass
class _Listener:
    callback: EventListener
    types: frozenset[EventType]

    def wants(self, event: Event) -> bool:
        return not self.types or event.type in self.types


class LifecycleEvents:
    """Ordered fan-out of lifecycle events to async listeners."""

    def __init__(self, max_pending: int = 256) -> None:
        self._listeners: list[_Listener] = []
        self._pending: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_pending)
        self._dispatcher: asyncio.Task[None] | None = None
        self.dropped = 0
        self.listener_errors = 0

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def on(self, *types: EventType, listener: EventListener) -> Callable[[], None]:
        """
        Register ``listener`` for ``types``, or for every event when none are given.

        Returns:
            Function removing the listener; safe to call twice
        """
        entry = _Listener(listener, frozenset(types))
        self._listeners.append(entry)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(entry)

        return remove

    def publish(self, event_type: EventType, data: dict[str, Any] | None = None) -> None:
        """Queue an event; when the queue is full the event is dropped and counted."""
        try:
            self._pending.put_nowait(Event(event_type, data or {}))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Lifecycle event dropped", event_type=event_type.value)

    async def start(self) -> None:
        if self.is_running:
            return
        self._dispatcher = asyncio.create_task(self._dispatch_loop())

    async def flush(self) -> None:
        """Wait until every queued event has reached its listeners."""
        if not self.is_running:
            await self._drain()
            return
        await self._pending.join()

    async def stop(self) -> None:
        """Deliver what is queued, then stop the dispatcher."""
        task = self._dispatcher
        self._dispatcher = None
        if task is not None:
            await self._pending.join()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._drain()

    async def _drain(self) -> None:
        while not self._pending.empty():
            await self._deliver(self._pending.get_nowait())

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._pending.get()
            await self._deliver(event)

    async def _deliver(self, event: Event) -> None:
        try:
            for entry in list(self._listeners):
                if not entry.wants(event):
                    continue
                try:
                    await entry.callback(event)
                except Exception as e:
                    self.listener_errors += 1
                    logger.exception("Lifecycle listener failed", event_type=event.type.value, error=str(e))
        finally:
            self._pending.task_done()


__all__ = ["Event", "EventListener", "LifecycleEvents"]
