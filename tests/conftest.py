"""Global test fixtures for proxyhelm."""

from __future__ import annotations

import json
import shutil
import socket
import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from proxyhelm.core.engine.elevation import DirectElevator, ElevationResult
from proxyhelm.core.models.config import Config

# Import pytest plugins
from tests.pytest_plugins.markers import (
    pytest_addoption,
    pytest_collection_modifyitems,
    pytest_configure,
)

# Re-export for pytest discovery
__all__ = [
    "pytest_addoption",
    "pytest_collection_modifyitems",
    "pytest_configure",
]


# ============================================================================
# FAKE PROXY CORE
# ============================================================================

# Behaves like ``sing-box run -c CONFIG``: binds every inbound listen_port,
# prints the started marker and exits 0 on SIGTERM. A "fake" object in the
# config changes behaviour:
#   exit_code  exit right after start with this code
#   lifetime   crash with code 3 after this many seconds
FAKE_CORE_SOURCE = '''\
import json
import signal
import socket
import sys
import time


def main():
    args = sys.argv[1:]
    if args[:1] == ["version"]:
        print("sing-box version 1.9.0-fake")
        return 0
    with open(args[args.index("-c") + 1]) as f:
        config = json.load(f)
    fake = config.get("fake", {})
    print("INFO[0000] parsing configuration", flush=True)
    if "exit_code" in fake:
        print("FATAL[0000] start service: " + fake.get("message", "bad config"), flush=True)
        return fake["exit_code"]

    sockets = []
    for inbound in config.get("inbounds", []):
        port = inbound.get("listen_port")
        if port:
            s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind(("127.0.0.1", port))
            s.listen(16)
            sockets.append(s)

    state = {"running": True}

    def stop(signum, frame):
        state["running"] = False

    signal.signal(signal.SIGTERM, stop)
    signal.signal(signal.SIGINT, stop)
    print("INFO[0000] sing-box started", flush=True)

    lifetime = fake.get("lifetime")
    started = time.monotonic()
    while state["running"]:
        time.sleep(0.05)
        if lifetime is not None and time.monotonic() - started > lifetime:
            print("FATAL[0001] core crashed", flush=True)
            return 3
    for s in sockets:
        s.close()
    print("INFO[0002] sing-box stopped", flush=True)
    return 0


sys.exit(main())
'''


@pytest.fixture
def fake_core(tmp_path: Path) -> Path:
    """Executable fake core named like the real one."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    core = bin_dir / "sing-box"
    core.write_text(f"#!{sys.executable}\n{FAKE_CORE_SOURCE}")
    core.chmod(0o755)
    return core


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port() -> Callable[[], int]:
    """Factory returning a currently unused TCP port."""
    return get_free_port


@pytest.fixture
def core_config(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a core configuration file."""

    def make(
        ports: list[int] | tuple[int, ...] = (),
        *,
        name: str = "profile",
        tun: str | None = None,
        fake: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Path:
        inbounds: list[dict[str, Any]] = [
            {"type": "mixed", "tag": f"in-{port}", "listen": "127.0.0.1", "listen_port": port}
            for port in ports
        ]
        if tun is not None:
            inbounds.append({"type": "tun", "tag": "tun-in", "interface_name": tun, "auto_route": True})
        data: dict[str, Any] = {"log": {"level": "info"}, "inbounds": inbounds, "outbounds": [{"type": "direct"}]}
        if fake:
            data["fake"] = fake
        if extra:
            data.update(extra)
        config_dir = tmp_path / "configs"
        config_dir.mkdir(exist_ok=True)
        path = config_dir / f"{name}.json"
        path.write_text(json.dumps(data))
        return path

    return make


# ============================================================================
# SETTINGS
# ============================================================================


@pytest.fixture
def socket_path() -> Iterator[Path]:
    """Short socket path; tmp_path can exceed the Unix socket length limit."""
    directory = Path(tempfile.mkdtemp(prefix="ph-", dir="/tmp"))
    yield directory / "service.sock"
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def config(tmp_path: Path, socket_path: Path) -> Config:
    """Settings with short timeouts and every path under tmp_path."""
    return Config.from_dict(
        {
            "core": {"cores_dir": str(tmp_path / "cores")},
            "paths": {
                "data_dir": str(tmp_path / "data"),
                "profiles_dir": str(tmp_path / "profiles"),
                "configs_dir": str(tmp_path / "configs-runtime"),
                "runtime_dir": str(tmp_path / "run"),
            },
            "ephemeral": {
                "elevator": "none",
                "launch_timeout": 10.0,
                "ready_timeout": 5.0,
                "port_poll_interval": 0.1,
                "interface_poll_interval": 0.1,
                "monitor_interval": 0.1,
                "stop_timeout": 2.0,
                "supervisor_poll_interval": 0.1,
            },
            "daemon": {
                "socket_path": str(socket_path),
                "request_timeout": 5.0,
                "probe_timeout": 1.0,
                "poll_interval": 0.1,
                "fast_poll_interval": 0.05,
                "fast_polls": 2,
                "startup_grace": 0.3,
            },
            "tunnel": {"connect_timeout": 2.0, "poll_interval": 0.05},
            "conflicts": {
                "kill_grace": 0.5,
                "retry_delay": 0.1,
                "interface_release_timeout": 0.3,
                "interface_poll_interval": 0.05,
            },
            "reconnect": {"enabled": True, "delay": 0.1},
        }
    )


# ============================================================================
# ELEVATION
# ============================================================================


class CountingElevator(DirectElevator):
    """Runs commands directly and records every invocation."""

    name = "counting"

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    async def run(self, argv: list[str]) -> ElevationResult:
        self.calls.append(list(argv))
        return await super().run(argv)


class DenyingElevator:
    """Simulates the user dismissing the administrator prompt."""

    name = "denying"

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    async def run(self, argv: list[str]) -> ElevationResult:
        self.calls.append(list(argv))
        return ElevationResult(returncode=1, stderr="User canceled. (-128)", denied=True)


@pytest.fixture
def elevator() -> CountingElevator:
    return CountingElevator()


@pytest.fixture
def denying_elevator() -> DenyingElevator:
    return DenyingElevator()
