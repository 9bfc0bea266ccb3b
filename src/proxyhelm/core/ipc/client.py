"""Client side of the helper service control protocol."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import structlog

from proxyhelm.core.ipc.protocol import (
    MAX_MESSAGE_BYTES,
    Command,
    ErrorCode,
    LogsData,
    ProtocolDecodeError,
    Request,
    Response,
    StartData,
    StatusData,
    SystemProxySettings,
    VersionData,
)

logger = structlog.get_logger(__name__)


class DaemonClientError(Exception):
    """Base class for helper service client failures."""


class DaemonUnavailableError(DaemonClientError):
    """The service socket is missing or refuses connections."""


class DaemonTimeoutError(DaemonClientError):
    """The service did not answer in time."""


class DaemonProtocolError(DaemonClientError):
    """The exchange broke off or the answer could not be decoded."""


class DaemonResponseError(DaemonClientError):
    """The service answered with a non-success code."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"[{int(code)}] {message}")


class DaemonClient:
    """One-request-per-connection client for the helper service.

    Requests from one client are serialized; the service handles a single
    request per connection anyway, and ordering keeps status polls from
    overtaking a pending start or stop.
    """

    def __init__(
        self,
        socket_path: Path | str,
        *,
        timeout: float = 30.0,
        probe_timeout: float = 2.0,
        auth_token: str | None = None,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.auth_token = auth_token
        self._lock = asyncio.Lock()

    async def send(self, request: Request, *, timeout: float | None = None) -> Response:
        """
        Send one request and return the decoded response, whatever its code.

        Raises:
            DaemonUnavailableError: If the socket cannot be reached
            DaemonTimeoutError: If no response arrives within the timeout
            DaemonProtocolError: If the exchange fails or the answer is garbage
        """
        if self.auth_token and request.auth_token is None:
            request = request.model_copy(update={"auth_token": self.auth_token})

        async with self._lock:
            try:
                return await asyncio.wait_for(
                    self._exchange(request),
                    timeout=timeout or self.timeout,
                )
            except TimeoutError as e:
                raise DaemonTimeoutError(
                    f"No response to '{request.command.value}' within {timeout or self.timeout}s"
                ) from e

    async def _exchange(self, request: Request) -> Response:
        try:
            reader, writer = await asyncio.open_unix_connection(
                str(self.socket_path), limit=MAX_MESSAGE_BYTES
            )
        except (FileNotFoundError, ConnectionRefusedError, PermissionError) as e:
            raise DaemonUnavailableError(f"Cannot reach service at {self.socket_path}: {e}") from e
        except OSError as e:
            raise DaemonUnavailableError(f"Cannot connect to {self.socket_path}: {e}") from e

        try:
            try:
                writer.write(request.encode())
                await writer.drain()
            except (ConnectionError, OSError) as e:
                raise DaemonProtocolError(f"Failed to send request: {e}") from e

            try:
                line = await reader.readline()
            except (ConnectionError, OSError, asyncio.LimitOverrunError, ValueError) as e:
                raise DaemonProtocolError(f"Failed to receive response: {e}") from e
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

        if not line.strip():
            raise DaemonProtocolError("Empty response from service")
        try:
            return Response.decode(line)
        except ProtocolDecodeError as e:
            raise DaemonProtocolError(f"Invalid response: {e}") from e

    async def call(self, request: Request, *, timeout: float | None = None) -> Response:
        """Send a request and raise DaemonResponseError unless it succeeded."""
        response = await self.send(request, timeout=timeout)
        if not response.success:
            raise DaemonResponseError(response.error_code, response.message)
        return response

    def _payload(self, response: Response, model: type) -> object:
        try:
            return response.payload(model)
        except ProtocolDecodeError as e:
            raise DaemonProtocolError(str(e)) from e

    # Commands

    async def ping(self, *, timeout: float | None = None) -> bool:
        response = await self.call(Request(command=Command.PING), timeout=timeout)
        return response.message == "pong"

    async def is_available(self) -> bool:
        """Probe the service: socket present and answering a ping quickly."""
        if not self.socket_path.exists():
            return False
        try:
            return await self.ping(timeout=self.probe_timeout)
        except DaemonClientError as e:
            logger.debug("Service availability check failed", socket=str(self.socket_path), error=str(e))
            return False

    async def version(self) -> VersionData:
        response = await self.call(Request(command=Command.VERSION))
        return self._payload(response, VersionData)  # type: ignore[return-value]

    async def start(
        self,
        config_path: Path | str,
        core_path: Path | str,
        system_proxy: SystemProxySettings | None = None,
    ) -> StartData:
        request = Request(
            command=Command.START,
            config_path=str(config_path),
            core_path=str(core_path),
            system_proxy=system_proxy,
        )
        response = await self.call(request)
        return self._payload(response, StartData)  # type: ignore[return-value]

    async def stop(self) -> None:
        """Stop the core; a core that is not running counts as stopped."""
        try:
            await self.call(Request(command=Command.STOP))
        except DaemonResponseError as e:
            if e.code != ErrorCode.CORE_NOT_RUNNING:
                raise

    async def status(self) -> StatusData:
        response = await self.call(Request(command=Command.STATUS))
        return self._payload(response, StatusData)  # type: ignore[return-value]

    async def logs(self) -> LogsData:
        response = await self.call(Request(command=Command.LOGS))
        return self._payload(response, LogsData)  # type: ignore[return-value]
