"""Helper service control protocol."""

from proxyhelm.core.ipc.client import (
    DaemonClient,
    DaemonClientError,
    DaemonProtocolError,
    DaemonResponseError,
    DaemonTimeoutError,
    DaemonUnavailableError,
)
from proxyhelm.core.ipc.protocol import Command, ErrorCode, Request, Response

__all__ = [
    "Command",
    "DaemonClient",
    "DaemonClientError",
    "DaemonProtocolError",
    "DaemonResponseError",
    "DaemonTimeoutError",
    "DaemonUnavailableError",
    "ErrorCode",
    "Request",
    "Response",
]
