"""Core interfaces (protocols) for engines and host collaborators."""

from proxyhelm.core.interfaces.collaborators import (
    ISystemProxyController,
    ITunnelProfile,
    ITunnelProvider,
    TunnelState,
)
from proxyhelm.core.interfaces.engine import IProxyEngine

__all__ = [
    "IProxyEngine",
    "ISystemProxyController",
    "ITunnelProfile",
    "ITunnelProvider",
    "TunnelState",
]
