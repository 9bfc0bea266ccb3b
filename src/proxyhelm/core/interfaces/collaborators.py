"""Interfaces of host-owned collaborators used by engines."""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from proxyhelm.core.ipc.protocol import SystemProxySettings


class TunnelState(str, Enum):
    """States reported by an OS-managed tunnel profile."""

    INVALID = "invalid"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REASSERTING = "reasserting"
    DISCONNECTING = "disconnecting"


TunnelStateHandler = Callable[[TunnelState], None]


@runtime_checkable
class ITunnelProfile(Protocol):
    """An installed OS tunnel configuration."""

    @property
    def state(self) -> TunnelState:
        ...

    @property
    def last_error(self) -> str | None:
        """Reason reported by the OS for the last disconnect, if any."""
        ...

    def subscribe(self, handler: TunnelStateHandler) -> Callable[[], None]:
        ...

    async def start(self, options: dict[str, str]) -> None:
        ...

    async def stop(self) -> None:
        ...


@runtime_checkable
class ITunnelProvider(Protocol):
    """Platform hook that installs and loads the tunnel profile."""

    @property
    def shared_config_path(self) -> Path:
        """Where the tunnel process expects its configuration."""
        ...

    async def is_installed(self) -> bool:
        ...

    async def is_approved(self) -> bool:
        ...

    async def load(self) -> ITunnelProfile | None:
        """Return the existing profile, or None when none is installed."""
        ...

    async def install(self) -> None:
        ...


@runtime_checkable
class ISystemProxyController(Protocol):
    """Applies and restores the OS HTTP proxy setting."""

    async def apply(self, settings: SystemProxySettings) -> None:
        ...

    async def restore(self) -> None:
        ...
