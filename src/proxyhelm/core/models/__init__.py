"""Core data models."""

from proxyhelm.core.models.config import Config
from proxyhelm.core.models.configuration import LogLevel, ProxyConfiguration
from proxyhelm.core.models.errors import ProxyError, ProxyErrorKind
from proxyhelm.core.models.profile import Profile
from proxyhelm.core.models.status import (
    ConnectionInfo,
    ConnectionStatus,
    EngineType,
    StatusKind,
)

__all__ = [
    # Config
    "Config",
    # Status
    "ConnectionInfo",
    "ConnectionStatus",
    "EngineType",
    "LogLevel",
    # Profile
    "Profile",
    "ProxyConfiguration",
    # Errors
    "ProxyError",
    "ProxyErrorKind",
    "StatusKind",
]
