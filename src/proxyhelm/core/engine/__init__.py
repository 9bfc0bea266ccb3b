"""Execution engines and the connection orchestrator."""

from proxyhelm.core.engine.daemon import DaemonEngine
from proxyhelm.core.engine.ephemeral import EphemeralProcessEngine
from proxyhelm.core.engine.orchestrator import ConnectionOrchestrator, NoActiveProfileError
from proxyhelm.core.engine.selection import HostCapabilities, select_engine_type
from proxyhelm.core.engine.state import InvalidStateError, InvalidTransitionError, StatusChannel
from proxyhelm.core.engine.tunnel import TunnelEngine

__all__ = [
    "ConnectionOrchestrator",
    "DaemonEngine",
    "EphemeralProcessEngine",
    "HostCapabilities",
    "InvalidStateError",
    "InvalidTransitionError",
    "NoActiveProfileError",
    "StatusChannel",
    "TunnelEngine",
    "select_engine_type",
]
