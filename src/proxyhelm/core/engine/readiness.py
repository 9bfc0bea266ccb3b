"""Waiting until a freshly launched core accepts traffic."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from enum import Enum
from pathlib import Path

import structlog

from proxyhelm.core.engine.conflicts import interface_exists

logger = structlog.get_logger(__name__)


class Readiness(str, Enum):
    """Outcome of a readiness wait."""

    READY = "ready"
    # Timed out but the process is still alive; treated as ready
    ASSUMED = "assumed"
    EXITED = "exited"


async def port_accepts(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


def _log_contains(path: Path | None, marker: str) -> bool:
    if path is None or not marker:
        return False
    try:
        return marker in path.read_text(errors="replace")
    except (FileNotFoundError, PermissionError):
        return False


async def wait_until_ready(
    *,
    is_alive: Callable[[], bool],
    ports: tuple[int, ...] = (),
    interfaces: tuple[str, ...] = (),
    log_path: Path | None = None,
    started_marker: str = "",
    timeout: float = 30.0,
    port_interval: float = 0.5,
    interface_interval: float = 1.0,
) -> Readiness:
    """
    Poll until the core is reachable or gone.

    With listen ports, every port must accept a TCP connection. Without
    them, readiness is the presence of a declared interface or the started
    marker in the core log.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    interval = port_interval if ports else interface_interval

    while loop.time() < deadline:
        if not is_alive():
            return Readiness.EXITED

        if ports:
            results = await asyncio.gather(*(port_accepts(p) for p in ports))
            if all(results):
                logger.debug("Core ports accepting connections", ports=list(ports))
                return Readiness.READY
        elif any(interface_exists(n) for n in interfaces) or _log_contains(log_path, started_marker):
            logger.debug("Core reported started", interfaces=list(interfaces))
            return Readiness.READY

        await asyncio.sleep(interval)

    if is_alive():
        logger.warning("Readiness timed out, process alive; assuming ready", timeout=timeout)
        return Readiness.ASSUMED
    return Readiness.EXITED
