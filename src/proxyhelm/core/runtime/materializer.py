"""Runtime configuration analysis and materialization.

Profiles carry the core configuration as JSON text. Before a launch it is
written to disk with a narrow transform applied, and its inbounds are
summarised so engines know which ports and interfaces to reclaim and wait on.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from proxyhelm.core.ipc.protocol import SystemProxySettings
from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.models.profile import Profile

logger = structlog.get_logger(__name__)

_INTERFACE_NAME_RE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_interface_name(name: str) -> str:
    """Strip everything but letters, digits, ``_`` and ``-``."""
    return _INTERFACE_NAME_RE.sub("", name)


@dataclass(frozen=True)
class InboundSummary:
    """What a core configuration listens on."""

    listen_ports: tuple[int, ...] = ()
    interfaces: tuple[str, ...] = ()
    has_tun: bool = False
    auto_route: bool | None = None
    system_proxy: SystemProxySettings | None = None

    @property
    def needs_route_hint(self) -> bool:
        """TUN without auto routing and without an HTTP proxy hint moves no traffic."""
        return self.has_tun and self.auto_route is False and self.system_proxy is None


def load_config(path: Path | str) -> dict[str, Any]:
    """
    Read a core configuration file.

    Raises:
        ProxyError: config_not_found or config_invalid
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ProxyError.config_not_found() from e
    except (PermissionError, UnicodeDecodeError) as e:
        raise ProxyError.config_invalid(f"Configuration file is not readable: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProxyError.config_invalid(f"Malformed JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProxyError.config_invalid("Configuration must be a JSON object")
    return data


def _inbounds(data: dict[str, Any]) -> list[dict[str, Any]]:
    inbounds = data.get("inbounds") or []
    if not isinstance(inbounds, list):
        raise ProxyError.config_invalid("'inbounds' must be a list")
    return [i for i in inbounds if isinstance(i, dict)]


def analyze_config(data: dict[str, Any]) -> InboundSummary:
    """Collect listen ports, TUN interface names and the system proxy hint."""
    ports: list[int] = []
    interfaces: list[str] = []
    has_tun = False
    auto_route: bool | None = None
    system_proxy: SystemProxySettings | None = None

    for inbound in _inbounds(data):
        port = inbound.get("listen_port")
        if isinstance(port, int) and not isinstance(port, bool) and 0 < port < 65536:
            ports.append(port)

        if inbound.get("type") != "tun":
            continue
        has_tun = True
        name = inbound.get("interface_name")
        if isinstance(name, str) and sanitize_interface_name(name):
            interfaces.append(sanitize_interface_name(name))
        if isinstance(inbound.get("auto_route"), bool):
            auto_route = inbound["auto_route"]

        platform = inbound.get("platform")
        http_proxy = platform.get("http_proxy") if isinstance(platform, dict) else None
        if system_proxy is None and isinstance(http_proxy, dict) and http_proxy.get("enabled"):
            port = http_proxy.get("server_port")
            if isinstance(port, int) and 0 < port < 65536:
                system_proxy = SystemProxySettings(
                    enabled=True,
                    host=http_proxy.get("server") or "127.0.0.1",
                    port=port,
                )

    return InboundSummary(
        listen_ports=tuple(dict.fromkeys(ports)),
        interfaces=tuple(dict.fromkeys(interfaces)),
        has_tun=has_tun,
        auto_route=auto_route,
        system_proxy=system_proxy,
    )


def analyze_config_file(path: Path | str) -> InboundSummary:
    return analyze_config(load_config(path))


def patched_config_path(path: Path | str) -> Path:
    """Where a copy of ``path`` with a reassigned interface name is written."""
    path = Path(path)
    return path.with_name(f"{path.stem}.patched.json")


def rename_tun_interfaces(data: dict[str, Any], name: str) -> dict[str, Any]:
    """Copy of ``data`` with every TUN inbound pinned to interface ``name``."""
    patched = json.loads(json.dumps(data))
    for inbound in _inbounds(patched):
        if inbound.get("type") == "tun":
            inbound["interface_name"] = name
    return patched


class ConfigMaterializer:
    """Writes a profile's configuration to the runtime config file."""

    def __init__(self, output_dir: Path | str, *, clear_interface_names: bool = True) -> None:
        self.output_dir = Path(output_dir)
        self.clear_interface_names = clear_interface_names

    def transform(self, data: dict[str, Any]) -> dict[str, Any]:
        """Drop hard-coded TUN interface names so the core picks a free one."""
        if not self.clear_interface_names:
            return data
        for inbound in _inbounds(data):
            if inbound.get("type") == "tun" and "interface_name" in inbound:
                logger.debug("Clearing TUN interface name", interface=inbound["interface_name"])
                del inbound["interface_name"]
        return data

    def materialize(self, profile: Profile) -> Path:
        """
        Write ``profile`` to ``<output_dir>/<id>.json``.

        Raises:
            ProxyError: config_invalid if the profile does not parse
        """
        data = self.transform(profile.parsed())
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{sanitize_interface_name(profile.id) or 'profile'}.json"
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logger.info("Runtime config written", profile=profile.name, path=str(path))
        return path
