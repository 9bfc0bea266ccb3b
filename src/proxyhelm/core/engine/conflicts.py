"""Port and virtual interface reclamation.

Only processes belonging to the proxy-core family are ever signalled; a port
held by anything else is reported back as a conflict.
"""

from __future__ import annotations

import asyncio
import errno
import os
import socket
import sys
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import psutil
import structlog

from proxyhelm.core.models.config import ConflictConfig

logger = structlog.get_logger(__name__)


@dataclass
class ReclaimReport:
    """Outcome of a reclamation pass."""

    requested: list = field(default_factory=list)
    remaining: list = field(default_factory=list)
    killed_pids: list[int] = field(default_factory=list)
    # Core-family processes this user may not signal; an elevated helper can
    deferred_pids: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.remaining


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """Probe a TCP port by binding to it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno in (errno.EADDRINUSE, errno.EACCES):
                return True
            raise
    return False


def interface_exists(name: str) -> bool:
    return name in psutil.net_if_stats()


def _process_names(proc: psutil.Process) -> set[str]:
    names: set[str] = set()
    try:
        names.add(proc.name())
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        pass
    try:
        # Interpreted launchers show up as "<interpreter> <script>"
        names.update(Path(arg).name for arg in proc.cmdline()[:2])
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        pass
    return names


def find_port_owners(port: int) -> list[psutil.Process]:
    """Processes holding a local TCP/UDP socket on ``port``."""
    pids: set[int] = set()
    try:
        for conn in psutil.net_connections(kind="inet"):
            if conn.laddr and conn.laddr.port == port and conn.pid:
                pids.add(conn.pid)
    except psutil.AccessDenied:
        # macOS only lists system-wide sockets for root; walk our own processes
        for proc in psutil.process_iter():
            try:
                if any(c.laddr and c.laddr.port == port for c in proc.net_connections(kind="inet")):
                    pids.add(proc.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

    owners = []
    for pid in sorted(pids):
        try:
            owners.append(psutil.Process(pid))
        except psutil.NoSuchProcess:
            continue
    return owners


class ConflictResolver:
    """Force-releases ports and interfaces held by stale proxy cores."""

    def __init__(self, config: ConflictConfig | None = None, extra_names: Iterable[str] = ()) -> None:
        self.config = config or ConflictConfig()
        self.family = set(self.config.process_names) | {n for n in extra_names if n}

    def is_core_process(self, proc: psutil.Process) -> bool:
        if proc.pid == os.getpid():
            return False
        return bool(_process_names(proc) & self.family)

    def find_core_processes(self) -> list[psutil.Process]:
        found = []
        for proc in psutil.process_iter():
            try:
                if self.is_core_process(proc):
                    found.append(proc)
            except psutil.NoSuchProcess:
                continue
        return found

    def _terminate(self, procs: list[psutil.Process], report: ReclaimReport) -> None:
        signalled = []
        for proc in procs:
            try:
                proc.terminate()
                signalled.append(proc)
                logger.warning("Terminating stale core process", pid=proc.pid, names=sorted(_process_names(proc)))
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                if proc.pid not in report.deferred_pids:
                    report.deferred_pids.append(proc.pid)
                logger.info("No permission to stop core process, deferring", pid=proc.pid)

        _, alive = psutil.wait_procs(signalled, timeout=self.config.kill_grace)
        for proc in alive:
            try:
                proc.kill()
                logger.warning("Killed stale core process", pid=proc.pid)
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied:
                report.deferred_pids.append(proc.pid)
        if alive:
            psutil.wait_procs(alive, timeout=self.config.kill_grace)
        report.killed_pids.extend(p.pid for p in signalled if p.pid not in report.deferred_pids)

    def _reclaim_ports_sync(self, ports: list[int]) -> ReclaimReport:
        report = ReclaimReport(requested=list(ports))
        busy = [p for p in ports if is_port_in_use(p)]

        for attempt in range(1, self.config.max_retries + 1):
            if not busy:
                break
            victims: dict[int, psutil.Process] = {}
            for port in busy:
                for proc in find_port_owners(port):
                    if self.is_core_process(proc) and proc.pid not in report.deferred_pids:
                        victims[proc.pid] = proc
            if not victims:
                break
            logger.info("Reclaiming ports", ports=busy, pids=sorted(victims), attempt=attempt)
            self._terminate(list(victims.values()), report)
            busy = [p for p in busy if is_port_in_use(p)]
            if busy and attempt < self.config.max_retries:
                time.sleep(self.config.retry_delay)

        if busy:
            # Ports held only by deferred core processes are left to the elevated helper
            deferred = set(report.deferred_pids)
            for port in busy:
                owners = {o.pid for o in find_port_owners(port)}
                if not owners or not owners <= deferred:
                    report.remaining.append(port)
        return report

    async def reclaim_ports(self, ports: Iterable[int]) -> ReclaimReport:
        """
        Make sure every port in ``ports`` is free.

        Returns:
            Report whose ``remaining`` lists the ports that stay occupied by
            processes outside the proxy-core family
        """
        ports = sorted(set(ports))
        if not ports:
            return ReclaimReport()
        report = await asyncio.to_thread(self._reclaim_ports_sync, ports)
        if report.remaining:
            logger.error("Ports still in use", ports=report.remaining)
        return report

    async def kill_stale_cores(self) -> list[int]:
        """Terminate every proxy-core family process; returns the pids signalled."""
        report = ReclaimReport()
        procs = await asyncio.to_thread(self.find_core_processes)
        if procs:
            await asyncio.to_thread(self._terminate, procs, report)
        return report.killed_pids

    async def reclaim_interfaces(self, names: Iterable[str]) -> ReclaimReport:
        """
        Wait for the named interfaces to disappear, stopping stale cores first.

        Returns:
            Report whose ``remaining`` lists interfaces still present after
            ``interface_release_timeout``
        """
        names = sorted({n for n in names if n})
        report = ReclaimReport(requested=list(names))
        present = [n for n in names if interface_exists(n)]
        if not present:
            return report

        logger.info("Interfaces occupied, stopping stale cores", interfaces=present)
        procs = await asyncio.to_thread(self.find_core_processes)
        if procs:
            await asyncio.to_thread(self._terminate, procs, report)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.interface_release_timeout
        last_forced = 0.0
        while present and loop.time() < deadline:
            if loop.time() - last_forced >= 1.0:
                for name in present:
                    await self._force_release(name)
                last_forced = loop.time()
            await asyncio.sleep(self.config.interface_poll_interval)
            present = [n for n in present if interface_exists(n)]

        report.remaining = present
        if present:
            logger.error("Interfaces still in use", interfaces=present)
        return report

    async def _force_release(self, name: str) -> None:
        """Ask the OS to tear an interface down; needs root."""
        if os.geteuid() != 0:
            return
        if sys.platform == "darwin":
            argv = ["ifconfig", name, "down"]
        else:
            argv = ["ip", "link", "delete", name]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await proc.wait()
        except FileNotFoundError:
            logger.debug("Interface tool not available", tool=argv[0])

    def find_available_interface_name(self) -> str:
        """First unused ``<prefix><n>`` name, searching up from the configured start."""
        prefix = self.config.interface_prefix
        start = self.config.interface_search_start
        existing = set(psutil.net_if_stats())
        for index in [*range(start, 256), *range(start - 1, -1, -1)]:
            name = f"{prefix}{index}"
            if name not in existing:
                return name
        raise RuntimeError(f"No free interface name with prefix {prefix!r}")
