"""Connection status state machine and subscriber stream."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

import structlog

from proxyhelm.core.models.status import ConnectionStatus, StatusKind

logger = structlog.get_logger(__name__)

StatusHandler = Callable[[ConnectionStatus, ConnectionStatus], None]

_D = StatusKind.DISCONNECTED
_CING = StatusKind.CONNECTING
_C = StatusKind.CONNECTED
_DING = StatusKind.DISCONNECTING
_E = StatusKind.ERROR

# Legal moves of the engine state machine. ``disconnected -> connected`` is
# absent on purpose: it only happens through ``StatusChannel.resync``.
TRANSITIONS: dict[StatusKind, frozenset[StatusKind]] = {
    _D: frozenset({_CING, _E}),
    _CING: frozenset({_C, _DING, _E}),
    _C: frozenset({_C, _DING, _D, _E}),
    _DING: frozenset({_D, _E}),
    _E: frozenset({_CING, _DING, _D, _E}),
}


class InvalidTransitionError(RuntimeError):
    """Raised when an engine tries an illegal status move."""

    def __init__(self, current: StatusKind, target: StatusKind) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal status transition {current.value} -> {target.value}")


class InvalidStateError(RuntimeError):
    """An operation was requested in a status that does not allow it."""

    def __init__(self, action: str, status: ConnectionStatus) -> None:
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} while {status.kind.value}")


class StatusChannel:
    """Holds the current ConnectionStatus and fans changes out to subscribers.

    Handlers run synchronously inside ``publish`` in subscription order, so a
    subscriber always sees transitions in the order they happened. ``watch``
    offers the same stream as an async iterator.
    """

    def __init__(
        self,
        name: str,
        *,
        strict: bool = True,
        initial: ConnectionStatus | None = None,
    ) -> None:
        self._name = name
        self._strict = strict
        self._current = initial or ConnectionStatus.disconnected()
        self._handlers: list[StatusHandler] = []
        self._watchers: list[asyncio.Queue[ConnectionStatus]] = []

    @property
    def current(self) -> ConnectionStatus:
        return self._current

    @property
    def kind(self) -> StatusKind:
        return self._current.kind

    def can_move_to(self, target: StatusKind) -> bool:
        return target in TRANSITIONS[self._current.kind]

    def publish(self, status: ConnectionStatus) -> None:
        """Move to ``status`` and notify subscribers.

        Raises:
            InvalidTransitionError: in strict mode, for moves outside TRANSITIONS
        """
        if self._strict and not self.can_move_to(status.kind):
            raise InvalidTransitionError(self._current.kind, status.kind)
        self._set(status)

    def resync(self, status: ConnectionStatus) -> None:
        """Adopt externally observed state, bypassing the transition table."""
        logger.info(
            "Status resynced",
            channel=self._name,
            previous=self._current.kind.value,
            status=status.kind.value,
        )
        self._set(status)

    def _set(self, status: ConnectionStatus) -> None:
        previous = self._current
        if previous == status:
            return
        self._current = status
        logger.debug(
            "Status changed",
            channel=self._name,
            previous=previous.kind.value,
            status=status.kind.value,
        )
        for handler in list(self._handlers):
            try:
                handler(previous, status)
            except Exception as e:
                logger.exception("Status handler failed", channel=self._name, error=str(e))
        for queue in list(self._watchers):
            queue.put_nowait(status)

    def subscribe(self, handler: StatusHandler) -> Callable[[], None]:
        """
        Subscribe to status changes.

        Args:
            handler: Called with ``(previous, current)`` on every change

        Returns:
            Unsubscribe function
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def watch(self) -> AsyncIterator[ConnectionStatus]:
        """Yield the current status, then every subsequent change."""
        queue: asyncio.Queue[ConnectionStatus] = asyncio.Queue()
        queue.put_nowait(self._current)
        self._watchers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(queue)
