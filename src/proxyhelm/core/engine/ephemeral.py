"""Ephemeral elevated-process engine.

The core runs as root under a small shell supervisor started through a
single administrator prompt. Start, readiness and stop all go through the
per-attempt handshake directory, so a session costs one prompt at most.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable

import structlog

from proxyhelm.core.engine.conflicts import ConflictResolver
from proxyhelm.core.engine.elevation import Elevator, create_elevator
from proxyhelm.core.engine.readiness import Readiness, wait_until_ready
from proxyhelm.core.engine.state import InvalidStateError, StatusChannel, StatusHandler
from proxyhelm.core.engine.supervisor import (
    AttemptFiles,
    cleanup_stale_attempts,
    process_alive,
    remove_stale_cache,
)
from proxyhelm.core.models.config import Config
from proxyhelm.core.models.configuration import ProxyConfiguration
from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.models.status import (
    ConnectionInfo,
    ConnectionStatus,
    EngineType,
    StatusKind,
)
from proxyhelm.core.runtime.materializer import analyze_config_file

logger = structlog.get_logger(__name__)

# How long the launcher may take to report the core pid once authorized
PID_WAIT_TIMEOUT = 10.0
# The supervisor records the exit code right after the core exits
SUPERVISOR_EXIT_TIMEOUT = 1.0


class EphemeralProcessEngine:
    """Runs the core under an elevated supervisor for the lifetime of a session."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        elevator: Elevator | None = None,
        conflicts: ConflictResolver | None = None,
    ) -> None:
        self.config = config or Config()
        self.settings = self.config.ephemeral
        self.elevator = elevator or create_elevator(self.settings.elevator)
        self._conflicts = conflicts
        self._channel = StatusChannel(EngineType.EPHEMERAL.value)
        self._lock = asyncio.Lock()
        self._files: AttemptFiles | None = None
        self._core_pid: int | None = None
        self._launch_task: asyncio.Task[ConnectionInfo] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def engine_type(self) -> EngineType:
        return EngineType.EPHEMERAL

    @property
    def status(self) -> ConnectionStatus:
        return self._channel.current

    @property
    def core_pid(self) -> int | None:
        return self._core_pid

    @property
    def attempt_files(self) -> AttemptFiles | None:
        return self._files

    def subscribe(self, handler: StatusHandler) -> Callable[[], None]:
        return self._channel.subscribe(handler)

    def watch(self) -> AsyncIterator[ConnectionStatus]:
        return self._channel.watch()

    async def validate(self, config: ProxyConfiguration) -> list[ProxyError]:
        try:
            config.validate()
            await asyncio.to_thread(analyze_config_file, config.config_path)
        except ProxyError as e:
            return [e]
        return []

    # Start

    async def start(self, config: ProxyConfiguration) -> None:
        """
        Launch the core and wait for readiness.

        Raises:
            InvalidStateError: If not disconnected or errored; nothing changes
            ProxyError: On failure; the engine ends in the error state
        """
        status = self._channel.current
        if not status.accepts_start:
            raise InvalidStateError("start", status)

        self._stopping = False
        self._channel.publish(ConnectionStatus.connecting())
        logger.info("Starting core", profile=config.profile_id, core=str(config.core_path))

        self._launch_task = asyncio.create_task(self._launch(config))
        try:
            info = await self._launch_task
        except asyncio.CancelledError:
            await self._release()
            current = asyncio.current_task()
            if self._stopping and current is not None and not current.cancelling():
                # stop() owns the status from here
                raise ProxyError.unknown("Connection attempt cancelled") from None
            if self._channel.kind == StatusKind.CONNECTING:
                self._channel.publish(ConnectionStatus.disconnecting())
                self._channel.publish(ConnectionStatus.disconnected())
            raise
        except ProxyError as e:
            await self._release()
            logger.error("Core start failed", error=e.description)
            self._channel.publish(ConnectionStatus.failed(e))
            raise
        except Exception as e:
            logger.exception("Unexpected error starting core", error=str(e))
            await self._release()
            error = ProxyError.unknown(str(e))
            self._channel.publish(ConnectionStatus.failed(error))
            raise error from e
        finally:
            self._launch_task = None

        self._channel.publish(ConnectionStatus.connected(info))
        self._monitor_task = asyncio.create_task(self._monitor())
        logger.info("Core connected", pid=self._core_pid, ports=list(info.listen_ports))

    async def _launch(self, config: ProxyConfiguration) -> ConnectionInfo:
        config.validate()
        summary = await asyncio.to_thread(analyze_config_file, config.config_path)

        runtime_dir = self.config.paths.runtime_dir
        await asyncio.to_thread(cleanup_stale_attempts, runtime_dir)
        remove_stale_cache(config.config_path)

        conflicts = self._conflicts or ConflictResolver(
            self.config.conflicts, extra_names=[config.core_path.name]
        )
        ports = await conflicts.reclaim_ports(summary.listen_ports)
        if ports.remaining:
            raise ProxyError.port_conflict(ports.remaining)
        interfaces = await conflicts.reclaim_interfaces(summary.interfaces)
        if interfaces.remaining:
            raise ProxyError.interface_conflict(interfaces.remaining)

        files = AttemptFiles.create(runtime_dir)
        self._files = files
        files.write_scripts(
            config.core_path,
            config.config_path,
            kill_pids=ports.deferred_pids + interfaces.deferred_pids,
            poll_interval=self.settings.supervisor_poll_interval,
            stop_grace=self.settings.stop_timeout / 2,
        )

        pid = await self._launch_supervisor(files)
        self._core_pid = pid

        outcome = await wait_until_ready(
            is_alive=lambda: process_alive(pid),
            ports=summary.listen_ports,
            interfaces=summary.interfaces,
            log_path=files.core_log,
            started_marker=self.config.core.started_marker,
            timeout=self.settings.ready_timeout,
            port_interval=self.settings.port_poll_interval,
            interface_interval=self.settings.interface_poll_interval,
        )
        if outcome == Readiness.EXITED:
            await self._wait_supervisor(files)
            output = files.output_tail(self.settings.log_tail_lines)
            exit_code = files.exit_code()
            detail = "Core exited during startup"
            if exit_code is not None:
                detail = f"{detail} (exit code {exit_code})"
            if not output:
                raise ProxyError.timeout(detail)
            raise ProxyError.core_start_failed(detail, output=output)

        return ConnectionInfo(
            engine_type=EngineType.EPHEMERAL,
            config_name=config.display_name,
            listen_ports=summary.listen_ports,
        )

    async def _launch_supervisor(self, files: AttemptFiles) -> int:
        argv = ["/bin/sh", str(files.launcher)]
        try:
            result = await asyncio.wait_for(
                self.elevator.run(argv), timeout=self.settings.launch_timeout
            )
        except TimeoutError as e:
            raise ProxyError.timeout("Administrator prompt was not answered") from e
        except FileNotFoundError as e:
            raise ProxyError.permission_denied(f"{self.elevator.name} is not available") from e

        if result.denied:
            raise ProxyError.permission_denied(result.stderr.strip())
        if not result.ok:
            raise ProxyError.core_start_failed(
                f"Launcher exited with code {result.returncode}",
                output=result.stderr.strip(),
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + PID_WAIT_TIMEOUT
        while loop.time() < deadline:
            pid = files.core_pid()
            if pid is not None:
                logger.debug("Supervisor reported core pid", pid=pid, supervisor=files.supervisor_pid())
                return pid
            if files.exit_code() is not None:
                break
            await asyncio.sleep(0.1)

        raise ProxyError.core_start_failed(
            "Supervisor did not report a core process",
            output=files.output_tail(self.settings.log_tail_lines),
        )

    # Monitoring

    async def _monitor(self) -> None:
        interval = self.settings.monitor_interval
        while True:
            await asyncio.sleep(interval)
            pid = self._core_pid
            if self._stopping or pid is None:
                return
            if process_alive(pid):
                continue

            files = self._files
            if files is not None:
                await self._wait_supervisor(files)
            output = files.output_tail(self.settings.log_tail_lines) if files else ""
            exit_code = files.exit_code() if files else None
            logger.error("Core process exited unexpectedly", pid=pid, exit_code=exit_code)

            self._monitor_task = None
            self._core_pid = None
            if files is not None:
                await asyncio.to_thread(files.remove)
                self._files = None
            self._channel.publish(
                ConnectionStatus.failed(
                    ProxyError.core_start_failed("Core process exited unexpectedly", output=output)
                )
            )
            return

    async def _cancel_monitor(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # Stop

    async def stop(self) -> None:
        """
        Stop the core through the stop marker.

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
        await self._cancel_monitor()

        launch = self._launch_task
        if launch is not None and not launch.done():
            logger.info("Cancelling start in progress")
            launch.cancel()
            await asyncio.wait([launch])

        await self._release()
        self._channel.publish(ConnectionStatus.disconnected())
        logger.info("Core stopped")

    async def _release(self) -> None:
        """Stop any launched core and remove the handshake directory."""
        async with self._lock:
            files, pid = self._files, self._core_pid
            self._files = None
            self._core_pid = None
            if files is None:
                return
            if pid is not None:
                await self._terminate(files, pid)
            await self._wait_supervisor(files)
            await asyncio.to_thread(files.remove)

    async def _wait_exit(self, pid: int, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if not process_alive(pid):
                return True
            await asyncio.sleep(0.1)
        return not process_alive(pid)

    async def _wait_supervisor(self, files: AttemptFiles) -> None:
        pid = files.supervisor_pid()
        if pid is not None:
            await self._wait_exit(pid, SUPERVISOR_EXIT_TIMEOUT)

    async def _terminate(self, files: AttemptFiles, pid: int) -> None:
        if not process_alive(pid):
            return
        files.request_stop()
        if await self._wait_exit(pid, self.settings.stop_timeout):
            logger.debug("Core stopped by supervisor", pid=pid)
            return

        # Supervisor is gone or stuck; this costs a second prompt
        logger.warning("Supervisor did not stop core, escalating", pid=pid)
        try:
            result = await asyncio.wait_for(
                self.elevator.run(["/bin/kill", "-KILL", str(pid)]),
                timeout=self.settings.launch_timeout,
            )
        except TimeoutError:
            logger.warning("Elevated kill was not authorized in time", pid=pid)
            return
        except FileNotFoundError as e:
            logger.error("Cannot escalate kill", pid=pid, error=str(e))
            return
        if not result.ok:
            logger.error("Elevated kill failed", pid=pid, code=result.returncode, stderr=result.stderr.strip())

    async def close(self) -> None:
        """Cancel monitoring; leaves a running core untouched."""
        await self._cancel_monitor()
