"""Main CLI application."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from proxyhelm import __version__
from proxyhelm.core.models.config import Config
from proxyhelm.core.models.status import EngineType

# Create main app
app = typer.Typer(
    name="proxyhelm",
    help="Run and supervise a local proxy core",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
daemon_app = typer.Typer(help="Helper service commands", no_args_is_help=True)
app.add_typer(daemon_app, name="daemon")

console = Console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]proxyhelm[/bold blue] v{__version__}")
        raise typer.Exit()


def load_config(path: Path | None) -> Config:
    """Settings from ``path`` (YAML) on top of the environment."""
    from proxyhelm.core.logging import configure_logging

    config = Config.from_yaml(path) if path else Config()
    configure_logging(config.logs.level, config.logs.structured, config.logs.file)
    return config


ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Config file path"),
]


@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show version",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """proxyhelm - proxy core connection manager."""
    pass


@app.command()
def connect(
    profile: Annotated[
        Path,
        typer.Argument(help="Profile or core configuration file (JSON)"),
    ],
    engine: Annotated[
        str | None,
        typer.Option("--engine", "-e", help="Preferred engine: ephemeral, daemon, tunnel"),
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Connect a profile and keep it up until interrupted."""
    from proxyhelm.cli.commands.connection import run_connect

    preferred = None
    if engine:
        try:
            preferred = EngineType.from_string(engine)
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--engine") from e

    asyncio.run(run_connect(load_config(config), profile, preferred))


@app.command()
def status(config: ConfigOption = None) -> None:
    """Show whether a core is running through the helper service."""
    from proxyhelm.cli.commands.daemon import show_status

    asyncio.run(show_status(load_config(config)))


@app.command()
def validate(
    profile: Annotated[
        Path,
        typer.Argument(help="Profile or core configuration file (JSON)"),
    ],
    config: ConfigOption = None,
) -> None:
    """Check that a profile can be launched."""
    from proxyhelm.cli.commands.connection import run_validate

    asyncio.run(run_validate(load_config(config), profile))


@daemon_app.command("serve")
def daemon_serve(config: ConfigOption = None) -> None:
    """Run the helper service in the foreground."""
    from proxyhelm.cli.commands.daemon import serve

    asyncio.run(serve(load_config(config)))


@daemon_app.command("status")
def daemon_status(config: ConfigOption = None) -> None:
    """Show helper service version and core status."""
    from proxyhelm.cli.commands.daemon import show_status

    asyncio.run(show_status(load_config(config), include_version=True))


@daemon_app.command("logs")
def daemon_logs(config: ConfigOption = None) -> None:
    """Print recent core output kept by the helper service."""
    from proxyhelm.cli.commands.daemon import show_logs

    asyncio.run(show_logs(load_config(config)))


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
