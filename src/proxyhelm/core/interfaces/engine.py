"""Proxy engine interface definitions."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from proxyhelm.core.engine.state import StatusHandler
    from proxyhelm.core.models.configuration import ProxyConfiguration
    from proxyhelm.core.models.errors import ProxyError
    from proxyhelm.core.models.status import ConnectionStatus, EngineType


@runtime_checkable
class IProxyEngine(Protocol):
    """Contract shared by every execution strategy."""

    @property
    def engine_type(self) -> EngineType:
        """Strategy tag."""
        ...

    @property
    def status(self) -> ConnectionStatus:
        """Current status."""
        ...

    def subscribe(self, handler: StatusHandler) -> Callable[[], None]:
        """Register a ``(previous, current)`` status handler; returns unsubscribe."""
        ...

    def watch(self) -> AsyncIterator[ConnectionStatus]:
        """Iterate over the current status and every later change."""
        ...

    async def start(self, config: ProxyConfiguration) -> None:
        """
        Launch the core and wait until it accepts traffic.

        Args:
            config: Per-attempt runtime configuration

        Raises:
            ProxyError: On any failure; the engine ends in the error state
        """
        ...

    async def stop(self) -> None:
        """Tear the core down. No-op when already disconnected."""
        ...

    async def validate(self, config: ProxyConfiguration) -> list[ProxyError]:
        """Return the problems that would prevent ``start`` from succeeding."""
        ...

    async def close(self) -> None:
        """Cancel background tasks without touching the core."""
        ...
