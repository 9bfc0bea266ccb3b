"""Helper service command implementations."""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.table import Table

from proxyhelm.core.daemon.core_manager import CoreManager
from proxyhelm.core.ipc.client import DaemonClient, DaemonClientError
from proxyhelm.core.ipc.server import DaemonServer
from proxyhelm.core.models.status import format_duration
from proxyhelm.core.runtime.system_proxy import create_system_proxy_controller

if TYPE_CHECKING:
    from proxyhelm.core.models.config import Config

console = Console()


def make_client(config: Config) -> DaemonClient:
    return DaemonClient(
        config.daemon.socket_path,
        timeout=config.daemon.request_timeout,
        probe_timeout=config.daemon.probe_timeout,
        auth_token=config.daemon.auth_token,
    )


async def serve(config: Config) -> None:
    """Serve until SIGINT or SIGTERM."""
    manager = CoreManager(config, system_proxy=create_system_proxy_controller())
    server = DaemonServer(config, manager=manager)
    await server.start()
    console.print(f"[bold green]Helper service listening on {config.daemon.socket_path}[/bold green]")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await server.stop()


async def show_status(config: Config, include_version: bool = False) -> None:
    client = make_client(config)
    try:
        data = await client.status()
        version = await client.version() if include_version else None
    except DaemonClientError as e:
        console.print(f"[red]Helper service unavailable: {e}[/red]")
        raise typer.Exit(1) from e

    table = Table(title="Core status")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    if version is not None:
        table.add_row("Service version", version.version)
    table.add_row("Running", "yes" if data.is_running else "no")
    if data.pid is not None:
        table.add_row("PID", str(data.pid))
    if data.config_path:
        table.add_row("Config", data.config_path)
    if data.uptime_seconds is not None:
        table.add_row("Uptime", format_duration(data.uptime_seconds))
    if data.last_exit_code is not None:
        table.add_row("Last exit code", str(data.last_exit_code))
    if data.error_reason:
        table.add_row("Error", f"[red]{data.error_reason}[/red]")
    console.print(table)


async def show_logs(config: Config) -> None:
    client = make_client(config)
    try:
        data = await client.logs()
    except DaemonClientError as e:
        console.print(f"[red]Helper service unavailable: {e}[/red]")
        raise typer.Exit(1) from e

    for line in data.lines:
        console.print(line, markup=False, highlight=False)
    console.print(f"[dim]{len(data.lines)} of {data.total_lines} lines[/dim]")
