"""Persistent helper-service engine.

A thin client: the service runs the core as root and this engine mirrors its
state through start/stop requests and periodic status polls.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable
from datetime import datetime

import structlog

from proxyhelm.core.engine.state import InvalidStateError, StatusChannel, StatusHandler
from proxyhelm.core.ipc.client import (
    DaemonClient,
    DaemonClientError,
    DaemonProtocolError,
    DaemonResponseError,
    DaemonTimeoutError,
    DaemonUnavailableError,
)
from proxyhelm.core.ipc.protocol import ErrorCode, LogsData, StatusData, VersionData
from proxyhelm.core.models.config import Config
from proxyhelm.core.models.configuration import ProxyConfiguration
from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.models.status import (
    ConnectionInfo,
    ConnectionStatus,
    EngineType,
    StatusKind,
)
from proxyhelm.core.runtime.materializer import analyze_config_file, patched_config_path

logger = structlog.get_logger(__name__)


def map_client_error(error: DaemonClientError) -> ProxyError:
    """Translate a client failure into the engine error taxonomy."""
    if isinstance(error, DaemonUnavailableError):
        return ProxyError.service_unavailable(str(error))
    if isinstance(error, DaemonTimeoutError):
        return ProxyError.timeout(str(error))
    if isinstance(error, DaemonProtocolError):
        return ProxyError.unknown(f"Service protocol error: {error}")
    if isinstance(error, DaemonResponseError):
        code, message = error.code, error.message
        if code == ErrorCode.CONFIG_NOT_FOUND:
            return ProxyError.config_not_found()
        if code == ErrorCode.CORE_NOT_FOUND:
            return ProxyError.core_not_found()
        if code == ErrorCode.CORE_START_FAILED:
            return ProxyError.core_start_failed(message)
        if code == ErrorCode.PERMISSION_DENIED:
            return ProxyError.permission_denied(message)
        if code == ErrorCode.INVALID_PARAMS:
            return ProxyError.config_invalid(message)
        return ProxyError.unknown(message)
    return ProxyError.unknown(str(error))


class DaemonEngine:
    """Drives a core owned by the helper service."""

    def __init__(self, config: Config | None = None, *, client: DaemonClient | None = None) -> None:
        self.config = config or Config()
        self.settings = self.config.daemon
        self.client = client or DaemonClient(
            self.settings.socket_path,
            timeout=self.settings.request_timeout,
            probe_timeout=self.settings.probe_timeout,
            auth_token=self.settings.auth_token,
        )
        self._channel = StatusChannel(EngineType.DAEMON.value)
        self._poll_task: asyncio.Task[None] | None = None
        self._start_task: asyncio.Task[ConnectionInfo] | None = None
        self._fast_polls_left = 0
        self._config_name = "config.json"
        self._ports: tuple[int, ...] = ()
        self._stopping = False

    @property
    def engine_type(self) -> EngineType:
        return EngineType.DAEMON

    @property
    def status(self) -> ConnectionStatus:
        return self._channel.current

    def subscribe(self, handler: StatusHandler) -> Callable[[], None]:
        return self._channel.subscribe(handler)

    def watch(self) -> AsyncIterator[ConnectionStatus]:
        return self._channel.watch()

    async def is_available(self) -> bool:
        return await self.client.is_available()

    async def validate(self, config: ProxyConfiguration) -> list[ProxyError]:
        try:
            config.validate()
            await asyncio.to_thread(analyze_config_file, config.config_path)
        except ProxyError as e:
            return [e]
        return []

    def _info(self, start_time: datetime | None = None) -> ConnectionInfo:
        return ConnectionInfo(
            engine_type=EngineType.DAEMON,
            config_name=self._config_name,
            start_time=start_time.astimezone().replace(tzinfo=None) if start_time else datetime.now(),
            listen_ports=self._ports,
        )

    # Start

    async def start(self, config: ProxyConfiguration) -> None:
        """
        Ask the service to run the core.

        Raises:
            InvalidStateError: If not disconnected or errored; nothing changes
            ProxyError: On failure; the engine ends in the error state
        """
        status = self._channel.current
        if not status.accepts_start:
            raise InvalidStateError("start", status)

        self._stopping = False
        self._channel.publish(ConnectionStatus.connecting())
        self._start_task = asyncio.create_task(self._begin(config))
        try:
            info = await self._start_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._stopping and current is not None and not current.cancelling():
                raise ProxyError.unknown("Connection attempt cancelled") from None
            if self._channel.kind == StatusKind.CONNECTING:
                self._channel.publish(ConnectionStatus.disconnecting())
                self._channel.publish(ConnectionStatus.disconnected())
            raise
        except ProxyError as e:
            logger.error("Service start failed", error=e.description)
            self._channel.publish(ConnectionStatus.failed(e))
            raise
        except DaemonClientError as e:
            error = map_client_error(e)
            logger.error("Service start failed", error=error.description)
            self._channel.publish(ConnectionStatus.failed(error))
            raise error from e
        except Exception as e:
            logger.exception("Unexpected error starting core in helper service", error=str(e))
            error = ProxyError.unknown(str(e))
            self._channel.publish(ConnectionStatus.failed(error))
            raise error from e
        finally:
            self._start_task = None

        self._channel.publish(ConnectionStatus.connected(info))
        self._start_polling()
        logger.info("Core running in helper service", config=self._config_name)

    async def _begin(self, config: ProxyConfiguration) -> ConnectionInfo:
        config.validate()
        summary = await asyncio.to_thread(analyze_config_file, config.config_path)
        if summary.needs_route_hint:
            logger.warning(
                "TUN config has auto_route disabled and no platform.http_proxy hint; traffic may not flow",
                config=str(config.config_path),
            )
        self._config_name = config.config_path.name
        self._ports = summary.listen_ports

        current = await self.client.status()
        same_config = current.config_path in (
            str(config.config_path),
            str(patched_config_path(config.config_path)),
        )
        if current.is_running and same_config:
            logger.info("Core already running with this config, adopting", pid=current.pid)
            return self._info(current.start_time)

        try:
            started = await self.client.start(
                config.config_path,
                config.core_path,
                system_proxy=summary.system_proxy,
            )
        except DaemonResponseError as e:
            if e.code != ErrorCode.CORE_ALREADY_RUNNING:
                raise
            logger.info("Service reports core already running, syncing state")
            current = await self.client.status()
            if not current.is_running:
                raise ProxyError.core_start_failed(e.message) from e
            return self._info(current.start_time)

        logger.debug("Service started core", pid=started.pid)
        return self._info()

    # Stop

    async def stop(self) -> None:
        """
        Ask the service to stop the core.

        A core that is not running, or a service that cannot be reached,
        both count as stopped.

        Raises:
            InvalidStateError: If a stop is already in progress
        """
        status = self._channel.current
        if status.kind == StatusKind.DISCONNECTED:
            return
        if status.kind == StatusKind.DISCONNECTING:
            raise InvalidStateError("stop", status)

        self._stopping = True
        self._channel.publish(ConnectionStatus.disconnecting())
        await self._cancel_polling()

        task = self._start_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

        try:
            await self.client.stop()
        except DaemonClientError as e:
            logger.warning("Stop request failed, treating core as stopped", error=str(e))

        self._channel.publish(ConnectionStatus.disconnected())
        logger.info("Helper service core stopped")

    # Polling

    def _start_polling(self) -> None:
        self._fast_polls_left = self.settings.fast_polls
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _cancel_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _poll_loop(self) -> None:
        while True:
            if self._fast_polls_left > 0:
                self._fast_polls_left -= 1
                interval = self.settings.fast_poll_interval
            else:
                interval = self.settings.poll_interval
            await asyncio.sleep(interval)
            await self.poll_once()

    async def poll_once(self) -> None:
        """Reconcile local status with the service once."""
        kind = self._channel.kind
        if kind in (StatusKind.CONNECTING, StatusKind.DISCONNECTING):
            return

        try:
            remote = await self.client.status()
        except DaemonClientError as e:
            if self._channel.kind == StatusKind.CONNECTED:
                logger.error("Lost connection to helper service", error=str(e))
                self._channel.publish(
                    ConnectionStatus.failed(
                        ProxyError.service_unavailable("Lost connection to helper service")
                    )
                )
            return

        # Status may have moved while the request was in flight
        kind = self._channel.kind
        if kind == StatusKind.CONNECTED and not remote.is_running:
            self._channel.publish(ConnectionStatus.failed(self._crash_error(remote)))
        elif kind == StatusKind.DISCONNECTED and remote.is_running:
            self._adopt(remote)

    def _crash_error(self, remote: StatusData) -> ProxyError:
        if remote.error_reason:
            reason = remote.error_reason
        elif remote.last_exit_code is not None:
            reason = f"exit code {remote.last_exit_code}"
        else:
            return ProxyError.core_start_failed("Core process terminated unexpectedly")
        logger.error("Core crashed in helper service", reason=reason)
        return ProxyError.core_start_failed(f"Core crashed: {reason}")

    def _adopt(self, remote: StatusData) -> None:
        if remote.config_path:
            self._config_name = remote.config_path.rsplit("/", 1)[-1]
        self._channel.resync(ConnectionStatus.connected(self._info(remote.start_time)))

    async def sync_initial_state(self) -> None:
        """Adopt a core the service is already running, then keep polling."""
        try:
            remote = await self.client.status()
        except DaemonClientError as e:
            logger.debug("Initial sync skipped, service unavailable", error=str(e))
            return
        if remote.is_running and self._channel.kind == StatusKind.DISCONNECTED:
            self._adopt(remote)
        self._start_polling()

    # Pass-through

    async def logs(self) -> LogsData:
        return await self.client.logs()

    async def version(self) -> VersionData:
        return await self.client.version()

    async def close(self) -> None:
        await self._cancel_polling()
