"""Tests for the helper service core manager with a fake core."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from proxyhelm.core.daemon.core_manager import CoreManager, CoreManagerError
from proxyhelm.core.engine.conflicts import ReclaimReport
from proxyhelm.core.engine.supervisor import process_alive
from proxyhelm.core.ipc.protocol import ErrorCode, SystemProxySettings
from tests.helpers import eventually

pytestmark = pytest.mark.slow


@pytest.fixture
async def manager(config):
    manager = CoreManager(config)
    yield manager
    await manager.shutdown()


def log_has(manager: CoreManager, text: str) -> bool:
    return any(text in line for line in manager.logs().lines)


# ============================================================================
# START / STOP TESTS
# ============================================================================


class TestStartStop:
    """Tests for running and stopping the core."""

    @pytest.mark.asyncio
    async def test_start_reports_running(self, manager, fake_core, core_config, free_port):
        """Test a started core shows up in status and logs."""
        config_path = core_config([free_port()])
        pid = await manager.start(config_path, fake_core)

        status = manager.status()
        assert status.is_running
        assert status.pid == pid
        assert status.config_path == str(config_path)
        assert status.start_time is not None
        assert status.uptime_seconds >= 0
        await eventually(lambda: log_has(manager, "sing-box started"))

    @pytest.mark.asyncio
    async def test_same_config_already_running(self, manager, fake_core, core_config, free_port):
        """Test starting the running config again is CORE_ALREADY_RUNNING."""
        config_path = core_config([free_port()])
        pid = await manager.start(config_path, fake_core)

        with pytest.raises(CoreManagerError) as exc_info:
            await manager.start(config_path, fake_core)
        assert exc_info.value.code == ErrorCode.CORE_ALREADY_RUNNING
        assert manager.pid == pid

    @pytest.mark.asyncio
    async def test_switch_config(self, manager, fake_core, core_config, free_port):
        """Test a different config replaces the running core."""
        first = await manager.start(core_config([free_port()], name="first"), fake_core)
        second_path = core_config([free_port()], name="second")
        second = await manager.start(second_path, fake_core)

        assert second != first
        assert not process_alive(first)
        assert manager.status().config_path == str(second_path)

    @pytest.mark.asyncio
    async def test_stop(self, manager, fake_core, core_config, free_port):
        """Test stop terminates the core cleanly."""
        pid = await manager.start(core_config([free_port()]), fake_core)
        await manager.stop()

        status = manager.status()
        assert not status.is_running
        assert status.pid is None
        assert status.last_exit_code == 0
        assert status.error_reason is None
        assert not process_alive(pid)

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, manager):
        """Test stopping with nothing running is CORE_NOT_RUNNING."""
        with pytest.raises(CoreManagerError) as exc_info:
            await manager.stop()
        assert exc_info.value.code == ErrorCode.CORE_NOT_RUNNING


# ============================================================================
# FAILURE TESTS
# ============================================================================


class TestFailures:
    """Tests for start failures and crashes."""

    @pytest.mark.asyncio
    async def test_config_not_found(self, manager, fake_core, tmp_path):
        """Test a missing config is CONFIG_NOT_FOUND."""
        with pytest.raises(CoreManagerError) as exc_info:
            await manager.start(tmp_path / "missing.json", fake_core)
        assert exc_info.value.code == ErrorCode.CONFIG_NOT_FOUND

    @pytest.mark.asyncio
    async def test_core_not_found(self, manager, core_config, tmp_path):
        """Test a missing core is CORE_NOT_FOUND."""
        with pytest.raises(CoreManagerError) as exc_info:
            await manager.start(core_config(), tmp_path / "sing-box")
        assert exc_info.value.code == ErrorCode.CORE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_exits_immediately(self, config, fake_core, core_config):
        """Test a core that dies during the grace period is CORE_START_FAILED."""
        config.daemon.startup_grace = 1.5
        manager = CoreManager(config)
        with pytest.raises(CoreManagerError) as exc_info:
            await manager.start(core_config(fake={"exit_code": 2, "message": "bad outbound"}), fake_core)

        assert exc_info.value.code == ErrorCode.CORE_START_FAILED
        assert "code 2" in exc_info.value.message
        assert "bad outbound" in exc_info.value.message
        assert not manager.is_running
        assert manager.status().last_exit_code == 2

    @pytest.mark.asyncio
    async def test_crash_recorded(self, manager, fake_core, core_config):
        """Test a crash after startup is reported through status."""
        await manager.start(core_config(fake={"lifetime": 0.5}), fake_core)
        await eventually(lambda: not manager.is_running)

        status = manager.status()
        assert status.last_exit_code == 3
        assert status.error_reason == "Core exited with code 3"
        assert status.config_path is None

    @pytest.mark.asyncio
    async def test_port_held_elsewhere(self, config, fake_core, core_config):
        """Test ports the resolver cannot free fail the start."""
        conflicts = AsyncMock()
        conflicts.kill_stale_cores.return_value = []
        conflicts.reclaim_ports.return_value = ReclaimReport(requested=[2080], remaining=[2080])
        manager = CoreManager(config, conflicts=conflicts)

        with pytest.raises(CoreManagerError) as exc_info:
            await manager.start(core_config([2080]), fake_core)
        assert exc_info.value.code == ErrorCode.CORE_START_FAILED
        assert "2080" in exc_info.value.message
        assert not manager.is_running


# ============================================================================
# INTERFACE AND PROXY TESTS
# ============================================================================


class TestInterfacesAndProxy:
    """Tests for interface patching and the system proxy."""

    @pytest.mark.asyncio
    async def test_occupied_interface_patched(self, config, fake_core, core_config):
        """Test an interface that stays busy makes the core launch with a free name."""
        conflicts = AsyncMock()
        conflicts.kill_stale_cores.return_value = []
        conflicts.reclaim_interfaces.return_value = ReclaimReport(requested=["utun9"], remaining=["utun9"])
        conflicts.reclaim_ports.return_value = ReclaimReport()
        conflicts.find_available_interface_name = lambda: "utun201"
        manager = CoreManager(config, conflicts=conflicts)

        config_path = core_config(tun="utun9")
        try:
            await manager.start(config_path, fake_core)
            patched = config_path.with_name(f"{config_path.stem}.patched.json")
            assert patched.exists()
            assert '"utun201"' in patched.read_text()
            assert manager.status().config_path == str(config_path)
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_system_proxy_applied_and_restored(self, config, fake_core, core_config, free_port):
        """Test the system proxy follows the core lifetime."""
        proxy = AsyncMock()
        manager = CoreManager(config, system_proxy=proxy)
        settings = SystemProxySettings(enabled=True, port=2080)

        await manager.start(core_config([free_port()]), fake_core, system_proxy=settings)
        proxy.apply.assert_awaited_once_with(settings)

        await manager.stop()
        proxy.restore.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disabled_system_proxy_ignored(self, config, fake_core, core_config, free_port):
        """Test a disabled proxy setting is not applied."""
        proxy = AsyncMock()
        manager = CoreManager(config, system_proxy=proxy)
        await manager.start(core_config([free_port()]), fake_core, system_proxy=SystemProxySettings())
        await manager.shutdown()
        proxy.apply.assert_not_awaited()
        proxy.restore.assert_not_awaited()


# ============================================================================
# LOG BUFFER TESTS
# ============================================================================


class TestLogBuffer:
    """Tests for the bounded output buffer."""

    def test_buffer_bounded(self, config):
        """Test the buffer keeps only the newest lines."""
        config.daemon.log_buffer_lines = 10
        manager = CoreManager(config)
        for i in range(25):
            manager._log.append(f"line {i}")
            manager._total_lines += 1

        assert len(manager._log) == 10
        logs = manager.logs(lines=3)
        assert logs.lines == ["line 22", "line 23", "line 24"]
        assert logs.total_lines == 25

    def test_default_response_size(self, config):
        """Test logs() returns log_response_lines by default."""
        config.daemon.log_response_lines = 5
        manager = CoreManager(config)
        manager._log.extend(str(i) for i in range(8))
        assert manager.logs().lines == ["3", "4", "5", "6", "7"]
