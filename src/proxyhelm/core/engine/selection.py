"""Choosing the execution strategy for a connection."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from proxyhelm.core.interfaces.collaborators import ITunnelProvider
from proxyhelm.core.ipc.client import DaemonClient
from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.models.status import EngineType

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HostCapabilities:
    """What the host can offer right now."""

    daemon_available: bool = False
    # Why the tunnel cannot be used; None when it can
    tunnel_error: ProxyError | None = None


def select_engine_type(preferred: EngineType | None, capabilities: HostCapabilities) -> EngineType:
    """
    Priority: a reachable helper service, then the profile's preference, then
    the elevated process.

    Raises:
        ProxyError: If the profile prefers the tunnel and it is unusable
    """
    if capabilities.daemon_available:
        return EngineType.DAEMON
    if preferred == EngineType.TUNNEL:
        if capabilities.tunnel_error is not None:
            raise capabilities.tunnel_error
        return EngineType.TUNNEL
    return EngineType.EPHEMERAL


async def detect_capabilities(
    daemon_client: DaemonClient | None,
    tunnel_provider: ITunnelProvider | None,
    preferred: EngineType | None = None,
) -> HostCapabilities:
    """Gather the facts ``select_engine_type`` decides on."""
    daemon_available = bool(daemon_client and await daemon_client.is_available())

    tunnel_error: ProxyError | None = None
    if preferred == EngineType.TUNNEL:
        if tunnel_provider is None or not await tunnel_provider.is_installed():
            tunnel_error = ProxyError.tunnel_not_installed()
        elif not await tunnel_provider.is_approved():
            tunnel_error = ProxyError.tunnel_not_approved()

    capabilities = HostCapabilities(daemon_available=daemon_available, tunnel_error=tunnel_error)
    logger.debug(
        "Host capabilities detected",
        daemon=daemon_available,
        tunnel=tunnel_error is None if preferred == EngineType.TUNNEL else None,
    )
    return capabilities
