"""Proxy error taxonomy shared by every execution strategy."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any


class ProxyErrorKind(str, Enum):
    """Closed set of failure categories surfaced by engines."""

    CONFIG_INVALID = "config_invalid"
    CONFIG_NOT_FOUND = "config_not_found"
    CORE_NOT_FOUND = "core_not_found"
    CORE_START_FAILED = "core_start_failed"
    PORT_CONFLICT = "port_conflict"
    INTERFACE_CONFLICT = "interface_conflict"
    PERMISSION_DENIED = "permission_denied"
    TUNNEL_NOT_INSTALLED = "tunnel_not_installed"
    TUNNEL_NOT_APPROVED = "tunnel_not_approved"
    TUNNEL_LOAD_FAILED = "tunnel_load_failed"
    TUNNEL_START_FAILED = "tunnel_start_failed"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Kinds the user can fix by changing configuration or installing something.
USER_ACTIONABLE_KINDS = frozenset(
    {
        ProxyErrorKind.CONFIG_INVALID,
        ProxyErrorKind.CONFIG_NOT_FOUND,
        ProxyErrorKind.CORE_NOT_FOUND,
        ProxyErrorKind.PORT_CONFLICT,
        ProxyErrorKind.INTERFACE_CONFLICT,
        ProxyErrorKind.TUNNEL_NOT_INSTALLED,
        ProxyErrorKind.TUNNEL_NOT_APPROVED,
        ProxyErrorKind.TUNNEL_LOAD_FAILED,
        ProxyErrorKind.SERVICE_UNAVAILABLE,
    }
)

_SUGGESTED_ACTIONS: dict[ProxyErrorKind, str] = {
    ProxyErrorKind.CONFIG_INVALID: "Check the profile configuration for syntax errors",
    ProxyErrorKind.CONFIG_NOT_FOUND: "Re-select the profile or create a new one",
    ProxyErrorKind.CORE_NOT_FOUND: "Install a proxy core version or set core.binary_path",
    ProxyErrorKind.CORE_START_FAILED: "Check the core output below and the profile configuration",
    ProxyErrorKind.PORT_CONFLICT: "Close the application using the port or change the listen port",
    ProxyErrorKind.INTERFACE_CONFLICT: "Stop other VPN or proxy tools using the interface, or reboot",
    ProxyErrorKind.PERMISSION_DENIED: "Approve the administrator prompt, or install the helper service",
    ProxyErrorKind.TUNNEL_NOT_INSTALLED: "Install the system tunnel extension",
    ProxyErrorKind.TUNNEL_NOT_APPROVED: "Approve the tunnel extension in the system settings",
    ProxyErrorKind.TUNNEL_LOAD_FAILED: "Try reinstalling the system tunnel extension",
    ProxyErrorKind.TUNNEL_START_FAILED: "Check the tunnel configuration and try again",
    ProxyErrorKind.SERVICE_UNAVAILABLE: "Install or start the helper service with 'proxyhelm daemon serve'",
    ProxyErrorKind.TIMEOUT: "The core may be stuck; try again or check its logs",
    ProxyErrorKind.UNKNOWN: "Try again or restart the application",
}


class ProxyError(Exception):
    """Failure raised and published by engines.

    A single exception type carries the taxonomy so callers can match on
    ``kind`` instead of juggling a class per failure. ``output`` holds the
    captured tail of the core's stdout/stderr when one is available.
    """

    def __init__(
        self,
        kind: ProxyErrorKind,
        detail: str = "",
        *,
        ports: Iterable[int] = (),
        interfaces: Iterable[str] = (),
        output: str = "",
    ) -> None:
        self.kind = kind
        self.detail = detail
        self.ports: tuple[int, ...] = tuple(sorted(set(ports)))
        self.interfaces: tuple[str, ...] = tuple(sorted(set(interfaces)))
        self.output = output
        super().__init__(self.description)

    # Constructors, one per taxonomy member

    @classmethod
    def config_invalid(cls, detail: str) -> ProxyError:
        return cls(ProxyErrorKind.CONFIG_INVALID, detail)

    @classmethod
    def config_not_found(cls) -> ProxyError:
        return cls(ProxyErrorKind.CONFIG_NOT_FOUND)

    @classmethod
    def core_not_found(cls) -> ProxyError:
        return cls(ProxyErrorKind.CORE_NOT_FOUND)

    @classmethod
    def core_start_failed(cls, detail: str, output: str = "") -> ProxyError:
        return cls(ProxyErrorKind.CORE_START_FAILED, detail, output=output)

    @classmethod
    def port_conflict(cls, ports: Iterable[int]) -> ProxyError:
        return cls(ProxyErrorKind.PORT_CONFLICT, ports=ports)

    @classmethod
    def interface_conflict(cls, interfaces: Iterable[str]) -> ProxyError:
        return cls(ProxyErrorKind.INTERFACE_CONFLICT, interfaces=interfaces)

    @classmethod
    def permission_denied(cls, detail: str = "") -> ProxyError:
        return cls(ProxyErrorKind.PERMISSION_DENIED, detail)

    @classmethod
    def tunnel_not_installed(cls) -> ProxyError:
        return cls(ProxyErrorKind.TUNNEL_NOT_INSTALLED)

    @classmethod
    def tunnel_not_approved(cls) -> ProxyError:
        return cls(ProxyErrorKind.TUNNEL_NOT_APPROVED)

    @classmethod
    def tunnel_load_failed(cls, detail: str) -> ProxyError:
        return cls(ProxyErrorKind.TUNNEL_LOAD_FAILED, detail)

    @classmethod
    def tunnel_start_failed(cls, detail: str) -> ProxyError:
        return cls(ProxyErrorKind.TUNNEL_START_FAILED, detail)

    @classmethod
    def service_unavailable(cls, detail: str = "") -> ProxyError:
        return cls(ProxyErrorKind.SERVICE_UNAVAILABLE, detail)

    @classmethod
    def timeout(cls, detail: str = "") -> ProxyError:
        return cls(ProxyErrorKind.TIMEOUT, detail)

    @classmethod
    def unknown(cls, detail: str) -> ProxyError:
        return cls(ProxyErrorKind.UNKNOWN, detail)

    @property
    def description(self) -> str:
        """Human readable message."""
        kind = self.kind
        if kind == ProxyErrorKind.CONFIG_INVALID:
            return f"Invalid configuration: {self.detail}"
        if kind == ProxyErrorKind.CONFIG_NOT_FOUND:
            return "Configuration file not found"
        if kind == ProxyErrorKind.CORE_NOT_FOUND:
            return "Proxy core not found"
        if kind == ProxyErrorKind.CORE_START_FAILED:
            return f"Failed to start proxy core: {self.detail}"
        if kind == ProxyErrorKind.PORT_CONFLICT:
            return f"Port(s) already in use: {', '.join(str(p) for p in self.ports)}"
        if kind == ProxyErrorKind.INTERFACE_CONFLICT:
            return f"Network interface(s) still in use: {', '.join(self.interfaces)}"
        if kind == ProxyErrorKind.PERMISSION_DENIED:
            base = "Administrator authorization was denied"
            return f"{base}: {self.detail}" if self.detail else base
        if kind == ProxyErrorKind.TUNNEL_NOT_INSTALLED:
            return "System tunnel extension is not installed"
        if kind == ProxyErrorKind.TUNNEL_NOT_APPROVED:
            return "System tunnel extension is not approved"
        if kind == ProxyErrorKind.TUNNEL_LOAD_FAILED:
            return f"Failed to load tunnel profile: {self.detail}"
        if kind == ProxyErrorKind.TUNNEL_START_FAILED:
            return f"Failed to start tunnel: {self.detail}"
        if kind == ProxyErrorKind.SERVICE_UNAVAILABLE:
            base = "Helper service is not available"
            return f"{base}: {self.detail}" if self.detail else base
        if kind == ProxyErrorKind.TIMEOUT:
            base = "Connection timed out"
            return f"{base}: {self.detail}" if self.detail else base
        return f"Unknown error: {self.detail}"

    @property
    def suggested_action(self) -> str:
        return _SUGGESTED_ACTIONS[self.kind]

    @property
    def is_user_actionable(self) -> bool:
        return self.kind in USER_ACTIONABLE_KINDS

    @property
    def is_recoverable(self) -> bool:
        """Whether retrying after user intervention is expected to succeed."""
        return self.is_user_actionable

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "detail": self.detail,
            "description": self.description,
            "suggested_action": self.suggested_action,
            "recoverable": self.is_recoverable,
            "ports": list(self.ports),
            "interfaces": list(self.interfaces),
            "output": self.output,
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProxyError):
            return NotImplemented
        return (
            self.kind == other.kind
            and self.detail == other.detail
            and self.ports == other.ports
            and self.interfaces == other.interfaces
        )

    def __hash__(self) -> int:
        return hash((self.kind, self.detail, self.ports, self.interfaces))

    def __repr__(self) -> str:
        return f"ProxyError(kind={self.kind.value!r}, detail={self.detail!r})"
