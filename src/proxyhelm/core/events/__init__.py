"""Connection lifecycle notifications."""

from proxyhelm.core.events.bus import Event, EventListener, LifecycleEvents
from proxyhelm.core.events.types import EventType

__all__ = [
    "Event",
    "EventListener",
    "EventType",
    "LifecycleEvents",
]
