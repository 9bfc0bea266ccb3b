"""Core process management inside the helper service."""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

import structlog

from proxyhelm.core.engine.conflicts import ConflictResolver
from proxyhelm.core.engine.supervisor import remove_stale_cache
from proxyhelm.core.interfaces.collaborators import ISystemProxyController
from proxyhelm.core.ipc.protocol import ErrorCode, LogsData, StatusData, SystemProxySettings
from proxyhelm.core.models.config import Config
from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.runtime.materializer import (
    analyze_config_file,
    load_config,
    patched_config_path,
    rename_tun_interfaces,
)
from proxyhelm.core.runtime.system_proxy import SystemProxyError

logger = structlog.get_logger(__name__)

# Time allowed for the core to exit after SIGTERM
TERMINATE_TIMEOUT = 5.0


class CoreManagerError(Exception):
    """A command failed; ``code`` is sent back to the client."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class CoreManager:
    """Owns the core child process of the helper service."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        conflicts: ConflictResolver | None = None,
        system_proxy: ISystemProxyController | None = None,
    ) -> None:
        self.config = config or Config()
        self.settings = self.config.daemon
        self._conflicts = conflicts
        self._system_proxy = system_proxy
        self._lock = asyncio.Lock()

        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._config_path: Path | None = None
        self._launch_path: Path | None = None
        self._start_time: datetime | None = None
        self._last_exit_code: int | None = None
        self._error_reason: str | None = None
        self._proxy_applied = False

        self._log: deque[str] = deque(maxlen=self.settings.log_buffer_lines)
        self._total_lines = 0

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self.is_running and self._process else None

    # Start

    async def start(
        self,
        config_path: Path | str,
        core_path: Path | str,
        system_proxy: SystemProxySettings | None = None,
    ) -> int:
        """
        Run the core with ``config_path``; a different config replaces the running one.

        Returns:
            Core pid

        Raises:
            CoreManagerError: With the protocol error code describing the failure
        """
        config_path = Path(config_path)
        core_path = Path(core_path)
        if not config_path.is_file():
            raise CoreManagerError(ErrorCode.CONFIG_NOT_FOUND, f"Config not found: {config_path}")
        if not core_path.is_file() or not os.access(core_path, os.X_OK):
            raise CoreManagerError(ErrorCode.CORE_NOT_FOUND, f"Core not found or not executable: {core_path}")

        async with self._lock:
            if self.is_running:
                if self._config_path == config_path:
                    raise CoreManagerError(
                        ErrorCode.CORE_ALREADY_RUNNING,
                        f"Core already running (pid {self.pid})",
                    )
                logger.info("Switching configuration", old=str(self._config_path), new=str(config_path))
                await self._stop_locked()

            launch_path = await self._prepare(config_path, core_path)
            pid = await self._spawn(config_path, launch_path, core_path)

        if system_proxy is not None and system_proxy.enabled:
            await self._apply_system_proxy(system_proxy)
        return pid

    async def _prepare(self, config_path: Path, core_path: Path) -> Path:
        """Clear stale cores, ports and interfaces; returns the config to launch."""
        try:
            summary = await asyncio.to_thread(analyze_config_file, config_path)
        except ProxyError as e:
            raise CoreManagerError(ErrorCode.INVALID_PARAMS, e.description) from e

        resolver = self._conflicts or ConflictResolver(
            self.config.conflicts, extra_names=[core_path.name]
        )
        killed = await resolver.kill_stale_cores()
        if killed:
            logger.info("Stopped stale core processes", pids=killed)

        launch_path = config_path
        if summary.interfaces:
            report = await resolver.reclaim_interfaces(summary.interfaces)
            if report.remaining:
                name = resolver.find_available_interface_name()
                launch_path = patched_config_path(config_path)
                patched = rename_tun_interfaces(load_config(config_path), name)
                launch_path.write_text(json.dumps(patched, indent=2), encoding="utf-8")
                logger.warning(
                    "Interface still occupied, launching with a free one",
                    occupied=report.remaining,
                    interface=name,
                    config=str(launch_path),
                )

        ports = await resolver.reclaim_ports(summary.listen_ports)
        if ports.remaining:
            raise CoreManagerError(
                ErrorCode.CORE_START_FAILED,
                ProxyError.port_conflict(ports.remaining).description,
            )

        remove_stale_cache(config_path)
        return launch_path

    async def _spawn(self, config_path: Path, launch_path: Path, core_path: Path) -> int:
        self._log.clear()
        self._total_lines = 0
        self._error_reason = None

        try:
            process = await asyncio.create_subprocess_exec(
                str(core_path),
                "run",
                "-c",
                str(launch_path),
                cwd=str(config_path.parent),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise CoreManagerError(ErrorCode.CORE_START_FAILED, f"Failed to launch core: {e}") from e

        self._process = process
        self._reader_task = asyncio.create_task(self._read_output(process))

        # A core that dies right away has a broken config
        await asyncio.sleep(self.settings.startup_grace)
        if process.returncode is not None:
            await self._drain_reader()
            self._process = None
            self._last_exit_code = process.returncode
            tail = "\n".join(list(self._log)[-20:])
            raise CoreManagerError(
                ErrorCode.CORE_START_FAILED,
                f"Core exited immediately with code {process.returncode}\n{tail}".rstrip(),
            )

        self._config_path = config_path
        self._launch_path = launch_path
        self._start_time = datetime.now(timezone.utc)
        self._watch_task = asyncio.create_task(self._watch(process))
        logger.info("Core started", pid=process.pid, config=str(launch_path))
        return process.pid

    async def _read_output(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        async for raw in process.stdout:
            self._log.append(raw.decode(errors="replace").rstrip("\n"))
            self._total_lines += 1

    async def _drain_reader(self) -> None:
        task = self._reader_task
        self._reader_task = None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=1.0)
        except TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._process is not process:
            return
        await self._drain_reader()
        self._process = None
        self._last_exit_code = code
        self._error_reason = f"Core exited with code {code}"
        logger.error("Core exited unexpectedly", pid=process.pid, exit_code=code)
        await self._restore_system_proxy()

    # Stop

    async def stop(self) -> None:
        """
        Raises:
            CoreManagerError: CORE_NOT_RUNNING when nothing runs
        """
        async with self._lock:
            if not self.is_running:
                raise CoreManagerError(ErrorCode.CORE_NOT_RUNNING, "Core is not running")
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        process = self._process
        # Detach first so the watcher does not record a crash
        self._process = None
        watch, self._watch_task = self._watch_task, None
        if watch is not None:
            watch.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watch

        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT)
            except TimeoutError:
                logger.warning("Core ignored SIGTERM, killing", pid=process.pid)
                process.kill()
                await process.wait()

        await self._drain_reader()
        if process is not None:
            self._last_exit_code = process.returncode
            logger.info("Core stopped", pid=process.pid, exit_code=process.returncode)
        self._error_reason = None
        self._start_time = None
        await self._restore_system_proxy()

    async def shutdown(self) -> None:
        async with self._lock:
            if self.is_running:
                await self._stop_locked()

    # System proxy

    async def _apply_system_proxy(self, settings: SystemProxySettings) -> None:
        if self._system_proxy is None:
            return
        try:
            await self._system_proxy.apply(settings)
            self._proxy_applied = True
        except (SystemProxyError, OSError) as e:
            logger.warning("Could not apply system proxy", error=str(e))

    async def _restore_system_proxy(self) -> None:
        if not self._proxy_applied or self._system_proxy is None:
            return
        self._proxy_applied = False
        try:
            await self._system_proxy.restore()
        except (SystemProxyError, OSError) as e:
            logger.warning("Could not restore system proxy", error=str(e))

    # Queries

    def status(self) -> StatusData:
        running = self.is_running
        uptime = None
        if running and self._start_time is not None:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return StatusData(
            is_running=running,
            pid=self.pid,
            config_path=str(self._config_path) if running and self._config_path else None,
            start_time=self._start_time if running else None,
            uptime_seconds=uptime,
            last_exit_code=self._last_exit_code,
            error_reason=self._error_reason,
        )

    def logs(self, lines: int | None = None) -> LogsData:
        count = lines or self.settings.log_response_lines
        return LogsData(lines=list(self._log)[-count:], total_lines=self._total_lines)
