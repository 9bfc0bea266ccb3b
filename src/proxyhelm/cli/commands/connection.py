"""Connect and validate command implementations."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.table import Table

from proxyhelm.core.engine.elevation import create_elevator
from proxyhelm.core.engine.orchestrator import ConnectionOrchestrator
from proxyhelm.core.engine.state import InvalidStateError
from proxyhelm.core.events import Event, EventType
from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.models.profile import Profile
from proxyhelm.core.models.status import ConnectionStatus, EngineType
from proxyhelm.core.runtime.binaries import CoreBinaryResolver
from proxyhelm.core.runtime.materializer import analyze_config
from proxyhelm.core.runtime.system_proxy import create_system_proxy_controller

if TYPE_CHECKING:
    from pathlib import Path

    from proxyhelm.core.models.config import Config

console = Console()

STATUS_STYLES = {
    "disconnected": "dim",
    "connecting": "yellow",
    "connected": "green",
    "disconnecting": "yellow",
    "error": "red",
}


def print_error(error: ProxyError) -> None:
    console.print(f"[red]{error.description}[/red]")
    if error.suggested_action:
        console.print(f"  {error.suggested_action}")


def describe_event(event: Event) -> str | None:
    """One console line for the lifecycle events a user should notice."""
    data = event.data
    if event.type == EventType.ENGINE_FALLBACK:
        engine = EngineType(data["to"]).display_name
        return f"[yellow]Helper service unavailable, using {engine}[/yellow]"
    if event.type == EventType.RECONNECT_SCHEDULED:
        return f"[yellow]Connection lost, reconnecting in {data['delay']:g}s[/yellow]"
    if event.type == EventType.RECONNECT_STARTED:
        return f"Reconnecting {data['profile']['name']}"
    if event.type == EventType.SYSTEM_PROXY_APPLIED:
        return f"System proxy set to {data['host']}:{data['port']}"
    if event.type == EventType.SYSTEM_PROXY_RESTORED:
        return "System proxy restored"
    return None


async def print_event(event: Event) -> None:
    message = describe_event(event)
    if message is not None:
        console.print(message)


def load_profile(path: Path, preferred: EngineType | None = None) -> Profile:
    try:
        return Profile.from_file(path, preferred_engine=preferred)
    except ProxyError as e:
        print_error(e)
        raise typer.Exit(1) from e


async def run_connect(config: Config, profile_path: Path, preferred: EngineType | None) -> None:
    """Connect until SIGINT or SIGTERM, then disconnect."""
    profile = load_profile(profile_path, preferred)
    orchestrator = ConnectionOrchestrator(
        config,
        system_proxy=create_system_proxy_controller(),
        elevator=create_elevator(config.ephemeral.elevator),
    )

    def on_status(previous: ConnectionStatus, current: ConnectionStatus) -> None:
        style = STATUS_STYLES.get(current.kind.value, "white")
        console.print(f"[{style}]{current.display_text}[/{style}]")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    remove_listener = orchestrator.events.on(
        EventType.ENGINE_FALLBACK,
        EventType.RECONNECT_SCHEDULED,
        EventType.RECONNECT_STARTED,
        EventType.SYSTEM_PROXY_APPLIED,
        EventType.SYSTEM_PROXY_RESTORED,
        listener=print_event,
    )
    await orchestrator.start()
    unsubscribe = orchestrator.subscribe(on_status)
    try:
        try:
            await orchestrator.connect(profile)
        except ProxyError as e:
            print_error(e)
            raise typer.Exit(1) from e
        except InvalidStateError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1) from e

        await orchestrator.events.flush()
        info = orchestrator.connection_info
        if info is not None and info.listen_ports:
            ports = ", ".join(str(p) for p in info.listen_ports)
            console.print(f"Listening on {ports}")
        console.print("[dim]Press Ctrl+C to disconnect[/dim]")
        await stop.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        with contextlib.suppress(InvalidStateError, ProxyError):
            await orchestrator.disconnect()
        unsubscribe()
        await orchestrator.close()
        remove_listener()


async def run_validate(config: Config, profile_path: Path) -> None:
    """Report what a profile listens on and which core would run it."""
    profile = load_profile(profile_path)
    try:
        summary = analyze_config(profile.parsed())
        core = CoreBinaryResolver(config.core).resolve()
    except ProxyError as e:
        print_error(e)
        raise typer.Exit(1) from e

    table = Table(title=f"Profile {profile.name}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Core", str(core))
    table.add_row("Listen ports", ", ".join(str(p) for p in summary.listen_ports) or "-")
    table.add_row("Interfaces", ", ".join(summary.interfaces) or "-")
    table.add_row("TUN", "yes" if summary.has_tun else "no")
    if summary.system_proxy is not None:
        table.add_row("System proxy", f"{summary.system_proxy.host}:{summary.system_proxy.port}")
    if profile.preferred_engine is not None:
        table.add_row("Preferred engine", profile.preferred_engine.display_name)
    console.print(table)

    if summary.needs_route_hint:
        console.print("[yellow]TUN without auto_route and no HTTP proxy: traffic will not be routed[/yellow]")
    console.print("[green]Profile is valid[/green]")
