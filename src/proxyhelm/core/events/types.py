"""Event type definitions."""

from enum import Enum


class EventType(str, Enum):
    """Lifecycle events published by the orchestrator and engines."""

    # Connection lifecycle
    CONNECTION_STATUS_CHANGED = "connection.status_changed"
    CONNECTION_REQUESTED = "connection.requested"
    CONNECTION_ESTABLISHED = "connection.established"
    CONNECTION_CLOSED = "connection.closed"
    CONNECTION_FAILED = "connection.failed"

    # Strategy selection
    ENGINE_SELECTED = "engine.selected"
    ENGINE_FALLBACK = "engine.fallback"

    # Recovery
    RECONNECT_SCHEDULED = "reconnect.scheduled"
    RECONNECT_STARTED = "reconnect.started"
    RECONNECT_CANCELLED = "reconnect.cancelled"

    # Host state
    SYSTEM_PROXY_APPLIED = "system_proxy.applied"
    SYSTEM_PROXY_RESTORED = "system_proxy.restored"
