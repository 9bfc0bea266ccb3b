"""Helper service: serves the control protocol over a Unix socket."""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Awaitable, Callable

import structlog

from proxyhelm import __version__
from proxyhelm.core.daemon.core_manager import CoreManager, CoreManagerError
from proxyhelm.core.ipc.protocol import (
    MAX_MESSAGE_BYTES,
    Command,
    ErrorCode,
    ProtocolDecodeError,
    Request,
    Response,
    StartData,
    UnknownCommandError,
    VersionData,
)
from proxyhelm.core.models.config import Config

logger = structlog.get_logger(__name__)

SOCKET_MODE = 0o666

Handler = Callable[[Request], Awaitable[Response]]


class DaemonServer:
    """Accepts one request per connection and dispatches it to the core manager."""

    def __init__(self, config: Config | None = None, *, manager: CoreManager | None = None) -> None:
        self.config = config or Config()
        self.settings = self.config.daemon
        self.manager = manager or CoreManager(self.config)
        self._server: asyncio.AbstractServer | None = None
        self._handlers: dict[Command, Handler] = {
            Command.PING: self._ping,
            Command.VERSION: self._version,
            Command.START: self._start,
            Command.STOP: self._stop,
            Command.STATUS: self._status,
            Command.LOGS: self._logs,
        }

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        """Bind the socket, replacing a stale one left by a previous run."""
        path = self.settings.socket_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with contextlib.suppress(FileNotFoundError):
            path.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=str(path), limit=MAX_MESSAGE_BYTES
        )
        os.chmod(path, SOCKET_MODE)
        logger.info("Helper service listening", socket=str(path), version=__version__)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        with contextlib.suppress(FileNotFoundError):
            self.settings.socket_path.unlink()
        await self.manager.shutdown()
        logger.info("Helper service stopped")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            try:
                line = await asyncio.wait_for(reader.readline(), timeout=self.settings.request_timeout)
            except (TimeoutError, ConnectionError, asyncio.LimitOverrunError, ValueError) as e:
                logger.debug("Dropping client", error=str(e))
                return
            if not line.strip():
                return

            response = await self.dispatch(line)
            writer.write(response.encode())
            await writer.drain()
        except ConnectionError as e:
            logger.debug("Client went away", error=str(e))
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    async def dispatch(self, line: bytes | str) -> Response:
        """Decode one request line and produce its response."""
        try:
            request = Request.decode(line)
        except UnknownCommandError as e:
            return Response.failure(ErrorCode.INVALID_COMMAND, str(e))
        except ProtocolDecodeError as e:
            return Response.failure(ErrorCode.INVALID_PARAMS, str(e))

        token = self.settings.auth_token
        if token and request.auth_token != token:
            logger.warning("Rejected request with bad auth token", command=request.command.value)
            return Response.failure(ErrorCode.PERMISSION_DENIED, "Invalid auth token")

        logger.debug("Request received", command=request.command.value)
        try:
            return await self._handlers[request.command](request)
        except CoreManagerError as e:
            logger.info("Command failed", command=request.command.value, code=int(e.code), message=e.message)
            return Response.failure(e.code, e.message)
        except Exception as e:
            logger.exception("Command crashed", command=request.command.value, error=str(e))
            return Response.failure(ErrorCode.UNKNOWN_ERROR, str(e))

    # Command handlers

    async def _ping(self, request: Request) -> Response:
        return Response.ok("pong")

    async def _version(self, request: Request) -> Response:
        return Response.ok(data=VersionData(version=__version__))

    async def _start(self, request: Request) -> Response:
        if not request.config_path or not request.core_path:
            return Response.failure(ErrorCode.INVALID_PARAMS, "config_path and core_path are required")
        pid = await self.manager.start(
            request.config_path,
            request.core_path,
            system_proxy=request.system_proxy,
        )
        return Response.ok("Core started", data=StartData(pid=pid))

    async def _stop(self, request: Request) -> Response:
        await self.manager.stop()
        return Response.ok("Core stopped")

    async def _status(self, request: Request) -> Response:
        return Response.ok(data=self.manager.status())

    async def _logs(self, request: Request) -> Response:
        return Response.ok(data=self.manager.logs())
