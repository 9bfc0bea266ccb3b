"""Tests for system proxy controllers with the platform tools stubbed out."""

from __future__ import annotations

import pytest

from proxyhelm.core.ipc.protocol import SystemProxySettings
from proxyhelm.core.runtime import system_proxy
from proxyhelm.core.runtime.system_proxy import (
    GSettingsProxyController,
    NetworkSetupProxyController,
    NullProxyController,
    SystemProxyError,
)


class FakeTool:
    """Records commands and answers queries from a table."""

    def __init__(self, answers: dict[tuple[str, ...], str] | None = None) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.answers = answers or {}

    async def __call__(self, *argv: str) -> str:
        self.calls.append(argv)
        return self.answers.get(argv, "")


@pytest.fixture
def settings():
    return SystemProxySettings(enabled=True, host="127.0.0.1", port=7890, bypass_domains=["localhost"])


class TestGSettings:
    """Tests for the GNOME controller."""

    @pytest.mark.asyncio
    async def test_apply_and_restore(self, monkeypatch, settings):
        """Test the previous values are put back on restore."""
        schema = GSettingsProxyController.SCHEMA
        tool = FakeTool({("gsettings", "get", schema, "mode"): "'none'\n"})
        monkeypatch.setattr(system_proxy, "_run", tool)
        controller = GSettingsProxyController()

        await controller.apply(settings)

        assert ("gsettings", "set", schema + ".http", "port", "7890") in tool.calls
        assert ("gsettings", "set", schema, "ignore-hosts", "['localhost']") in tool.calls
        assert tool.calls[-1] == ("gsettings", "set", schema, "mode", "manual")

        tool.calls.clear()
        await controller.restore()
        assert ("gsettings", "set", schema, "mode", "'none'") in tool.calls

        tool.calls.clear()
        await controller.restore()
        assert tool.calls == []

    @pytest.mark.asyncio
    async def test_snapshot_taken_once(self, monkeypatch, settings):
        """Test a second apply keeps the original snapshot."""
        tool = FakeTool()
        monkeypatch.setattr(system_proxy, "_run", tool)
        controller = GSettingsProxyController()
        await controller.apply(settings)
        await controller.apply(settings)
        gets = [c for c in tool.calls if c[1] == "get"]
        assert len(gets) == len(GSettingsProxyController.KEYS)


class TestNetworkSetup:
    """Tests for the macOS controller."""

    @pytest.mark.asyncio
    async def test_apply_and_restore(self, monkeypatch, settings):
        """Test every enabled service is configured and restored."""
        tool = FakeTool(
            {
                ("networksetup", "-listallnetworkservices"): "An asterisk (*) denotes...\nWi-Fi\n*Bluetooth PAN\n",
                ("networksetup", "-getwebproxy", "Wi-Fi"): "Enabled: No\nServer: \nPort: 0\n",
                ("networksetup", "-getsecurewebproxy", "Wi-Fi"): "Enabled: Yes\nServer: corp\nPort: 3128\n",
            }
        )
        monkeypatch.setattr(system_proxy, "_run", tool)
        controller = NetworkSetupProxyController()

        await controller.apply(settings)

        assert ("networksetup", "-setwebproxy", "Wi-Fi", "127.0.0.1", "7890") in tool.calls
        assert not any("Bluetooth PAN" in c for c in tool.calls)

        tool.calls.clear()
        await controller.restore()
        assert ("networksetup", "-setwebproxystate", "Wi-Fi", "off") in tool.calls
        assert ("networksetup", "-setsecurewebproxy", "Wi-Fi", "corp", "3128") in tool.calls
        assert ("networksetup", "-setsecurewebproxystate", "Wi-Fi", "on") in tool.calls


class TestRun:
    """Tests for the subprocess helper."""

    @pytest.mark.asyncio
    async def test_failure_raises(self):
        """Test a failing tool raises SystemProxyError."""
        with pytest.raises(SystemProxyError, match="failed \\(4\\)"):
            await system_proxy._run("/bin/sh", "-c", "exit 4")

    @pytest.mark.asyncio
    async def test_null_controller(self, settings):
        """Test the fallback controller does nothing."""
        controller = NullProxyController()
        await controller.apply(settings)
        await controller.restore()
