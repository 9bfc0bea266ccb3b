"""System HTTP proxy control.

Controllers snapshot the current setting before applying a new one, and
``restore`` puts the snapshot back.
"""

from __future__ import annotations

import asyncio
import shutil
import sys
from typing import Any

import structlog

from proxyhelm.core.ipc.protocol import SystemProxySettings

logger = structlog.get_logger(__name__)


class SystemProxyError(RuntimeError):
    """A platform proxy tool failed."""


async def _run(*argv: str) -> str:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise SystemProxyError(
            f"{argv[0]} {argv[1]} failed ({proc.returncode}): {stderr.decode(errors='replace').strip()}"
        )
    return stdout.decode(errors="replace")


class NetworkSetupProxyController:
    """macOS controller built on ``networksetup``."""

    def __init__(self) -> None:
        self._snapshot: dict[str, dict[str, Any]] | None = None

    async def _services(self) -> list[str]:
        output = await _run("networksetup", "-listallnetworkservices")
        # First line is a legend; disabled services start with "*"
        return [line for line in output.splitlines()[1:] if line and not line.startswith("*")]

    @staticmethod
    def _parse_proxy(output: str) -> dict[str, Any]:
        fields = dict(
            line.split(":", 1) for line in output.splitlines() if ":" in line
        )
        return {
            "enabled": fields.get("Enabled", "").strip() == "Yes",
            "host": fields.get("Server", "").strip(),
            "port": fields.get("Port", "0").strip() or "0",
        }

    async def apply(self, settings: SystemProxySettings) -> None:
        services = await self._services()
        if self._snapshot is None:
            snapshot = {}
            for service in services:
                snapshot[service] = {
                    "web": self._parse_proxy(await _run("networksetup", "-getwebproxy", service)),
                    "secure": self._parse_proxy(await _run("networksetup", "-getsecurewebproxy", service)),
                }
            self._snapshot = snapshot

        for service in services:
            await _run("networksetup", "-setwebproxy", service, settings.host, str(settings.port))
            await _run("networksetup", "-setsecurewebproxy", service, settings.host, str(settings.port))
            if settings.bypass_domains:
                await _run("networksetup", "-setproxybypassdomains", service, *settings.bypass_domains)
        logger.info("System proxy applied", host=settings.host, port=settings.port, services=len(services))

    async def restore(self) -> None:
        if self._snapshot is None:
            return
        for service, saved in self._snapshot.items():
            for kind, flag in (("web", "-setwebproxy"), ("secure", "-setsecurewebproxy")):
                entry = saved[kind]
                if entry["host"]:
                    await _run("networksetup", flag, service, entry["host"], str(entry["port"]))
                state = "on" if entry["enabled"] else "off"
                await _run("networksetup", f"{flag}state", service, state)
        self._snapshot = None
        logger.info("System proxy restored")


class GSettingsProxyController:
    """GNOME controller built on ``gsettings``."""

    SCHEMA = "org.gnome.system.proxy"
    KEYS = (
        ("", "mode"),
        (".http", "host"),
        (".http", "port"),
        (".https", "host"),
        (".https", "port"),
        ("", "ignore-hosts"),
    )

    def __init__(self) -> None:
        self._snapshot: dict[tuple[str, str], str] | None = None

    async def apply(self, settings: SystemProxySettings) -> None:
        if self._snapshot is None:
            self._snapshot = {
                (suffix, key): (await _run("gsettings", "get", self.SCHEMA + suffix, key)).strip()
                for suffix, key in self.KEYS
            }
        for suffix in (".http", ".https"):
            await _run("gsettings", "set", self.SCHEMA + suffix, "host", settings.host)
            await _run("gsettings", "set", self.SCHEMA + suffix, "port", str(settings.port))
        ignore = "[" + ", ".join(f"'{d}'" for d in settings.bypass_domains) + "]"
        await _run("gsettings", "set", self.SCHEMA, "ignore-hosts", ignore)
        await _run("gsettings", "set", self.SCHEMA, "mode", "manual")
        logger.info("System proxy applied", host=settings.host, port=settings.port)

    async def restore(self) -> None:
        if self._snapshot is None:
            return
        for (suffix, key), value in self._snapshot.items():
            await _run("gsettings", "set", self.SCHEMA + suffix, key, value)
        self._snapshot = None
        logger.info("System proxy restored")


class NullProxyController:
    """Used where no supported proxy tool exists."""

    async def apply(self, settings: SystemProxySettings) -> None:
        logger.warning("System proxy not supported on this platform", platform=sys.platform)

    async def restore(self) -> None:
        return None


def create_system_proxy_controller() -> NetworkSetupProxyController | GSettingsProxyController | NullProxyController:
    """Pick the controller for this host."""
    if sys.platform == "darwin" and shutil.which("networksetup"):
        return NetworkSetupProxyController()
    if sys.platform.startswith("linux") and shutil.which("gsettings"):
        return GSettingsProxyController()
    return NullProxyController()
