"""Core module - models, engines and the connection orchestrator."""

from proxyhelm.core.events import Event, EventType, LifecycleEvents

__all__ = [
    "Event",
    "EventType",
    "LifecycleEvents",
]
