"""Connection status state and connection info models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from proxyhelm.core.models.errors import ProxyError


class EngineType(str, Enum):
    """Execution strategy used to run the proxy core."""

    EPHEMERAL = "ephemeral"
    DAEMON = "daemon"
    TUNNEL = "tunnel"

    @property
    def display_name(self) -> str:
        return {
            EngineType.EPHEMERAL: "Elevated process",
            EngineType.DAEMON: "Helper service",
            EngineType.TUNNEL: "System tunnel",
        }[self]

    @classmethod
    def from_string(cls, value: str) -> EngineType:
        """Parse engine type from string."""
        value = value.lower().strip()
        for member in cls:
            if member.value == value:
                return member
        raise ValueError(f"Unknown engine type: {value}")


class StatusKind(str, Enum):
    """Discriminator of ConnectionStatus."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    ERROR = "error"


def format_duration(seconds: float) -> str:
    """Format seconds as ``MM:SS`` or ``H:MM:SS``."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


@dataclass(frozen=True)
class ConnectionInfo:
    """Details about an established connection."""

    engine_type: EngineType
    config_name: str
    start_time: datetime = field(default_factory=datetime.now)
    listen_ports: tuple[int, ...] = ()

    def duration(self, now: datetime | None = None) -> timedelta:
        return (now or datetime.now()) - self.start_time

    def formatted_duration(self, now: datetime | None = None) -> str:
        return format_duration(self.duration(now).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "engine_type": self.engine_type.value,
            "config_name": self.config_name,
            "start_time": self.start_time.isoformat(),
            "listen_ports": list(self.listen_ports),
        }


@dataclass(frozen=True)
class ConnectionStatus:
    """Tagged connection state.

    Build instances through the classmethod constructors; ``info`` is only set
    for ``connected`` and ``error`` only for the error state.
    """

    kind: StatusKind
    info: ConnectionInfo | None = None
    error: ProxyError | None = None

    @classmethod
    def disconnected(cls) -> ConnectionStatus:
        return cls(StatusKind.DISCONNECTED)

    @classmethod
    def connecting(cls) -> ConnectionStatus:
        return cls(StatusKind.CONNECTING)

    @classmethod
    def connected(cls, info: ConnectionInfo) -> ConnectionStatus:
        return cls(StatusKind.CONNECTED, info=info)

    @classmethod
    def disconnecting(cls) -> ConnectionStatus:
        return cls(StatusKind.DISCONNECTING)

    @classmethod
    def failed(cls, error: ProxyError) -> ConnectionStatus:
        return cls(StatusKind.ERROR, error=error)

    @property
    def is_connected(self) -> bool:
        return self.kind == StatusKind.CONNECTED

    @property
    def is_transitioning(self) -> bool:
        return self.kind in (StatusKind.CONNECTING, StatusKind.DISCONNECTING)

    @property
    def is_error(self) -> bool:
        return self.kind == StatusKind.ERROR

    @property
    def can_toggle(self) -> bool:
        """Whether a connect/disconnect action is accepted right now."""
        return not self.is_transitioning

    @property
    def accepts_start(self) -> bool:
        return self.kind in (StatusKind.DISCONNECTED, StatusKind.ERROR)

    @property
    def display_text(self) -> str:
        if self.kind == StatusKind.CONNECTED and self.info is not None:
            return f"Connected ({self.info.engine_type.display_name})"
        if self.kind == StatusKind.ERROR and self.error is not None:
            return f"Error: {self.error.description}"
        return self.kind.value.capitalize()

    @property
    def short_text(self) -> str:
        return {
            StatusKind.DISCONNECTED: "Off",
            StatusKind.CONNECTING: "...",
            StatusKind.CONNECTED: "On",
            StatusKind.DISCONNECTING: "...",
            StatusKind.ERROR: "Err",
        }[self.kind]

    def connected_duration(self, now: datetime | None = None) -> timedelta | None:
        if self.info is None:
            return None
        return self.info.duration(now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.kind.value,
            "info": self.info.to_dict() if self.info else None,
            "error": self.error.to_dict() if self.error else None,
        }

    def __str__(self) -> str:
        return self.display_text
