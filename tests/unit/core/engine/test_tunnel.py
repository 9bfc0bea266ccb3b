"""Tests for the OS tunnel engine against a fake platform tunnel."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from proxyhelm.core.engine.state import InvalidStateError
from proxyhelm.core.engine.tunnel import TunnelEngine
from proxyhelm.core.interfaces.collaborators import ITunnelProfile, ITunnelProvider, TunnelState
from proxyhelm.core.models.configuration import ProxyConfiguration
from proxyhelm.core.models.errors import ProxyError, ProxyErrorKind
from proxyhelm.core.models.status import EngineType, StatusKind


class FakeTunnelProfile:
    """Tunnel profile whose state changes are delivered on the next loop turn."""

    def __init__(self) -> None:
        self.state = TunnelState.DISCONNECTED
        self.last_error: str | None = None
        self.options: dict[str, str] | None = None
        self.stop_calls = 0
        # Set to a reason to make start end in a disconnect
        self.refuse: str | None = None
        self.auto_connect = True
        self._handlers: list = []

    def subscribe(self, handler):
        self._handlers.append(handler)
        return lambda: self._handlers.remove(handler) if handler in self._handlers else None

    def set_state(self, state: TunnelState, error: str | None = None) -> None:
        self.state = state
        if error is not None:
            self.last_error = error
        for handler in list(self._handlers):
            handler(state)

    async def start(self, options: dict[str, str]) -> None:
        self.options = options
        self.set_state(TunnelState.CONNECTING)
        loop = asyncio.get_running_loop()
        if self.refuse is not None:
            loop.call_soon(self.set_state, TunnelState.DISCONNECTED, self.refuse)
        elif self.auto_connect:
            loop.call_soon(self.set_state, TunnelState.CONNECTED)

    async def stop(self) -> None:
        self.stop_calls += 1
        self.set_state(TunnelState.DISCONNECTING)
        asyncio.get_running_loop().call_soon(self.set_state, TunnelState.DISCONNECTED)


class FakeTunnelProvider:
    """Platform hook with switchable install and approval state."""

    def __init__(self, shared_dir: Path) -> None:
        self.shared_config_path = shared_dir / "shared" / "config.json"
        self.installed = True
        self.approved = True
        self.profile: FakeTunnelProfile | None = None
        self.installs = 0
        self.load_error: Exception | None = None
        self.check_error: Exception | None = None

    async def is_installed(self) -> bool:
        if self.check_error is not None:
            raise self.check_error
        return self.installed

    async def is_approved(self) -> bool:
        return self.approved

    async def load(self) -> FakeTunnelProfile | None:
        if self.load_error is not None:
            raise self.load_error
        return self.profile

    async def install(self) -> None:
        self.installs += 1
        self.profile = FakeTunnelProfile()


@pytest.fixture
def provider(tmp_path):
    return FakeTunnelProvider(tmp_path)


@pytest.fixture
def engine(provider, config):
    config.tunnel.connect_timeout = 1.0
    return TunnelEngine(provider, config)


@pytest.fixture
def profile_config(core_config, fake_core):
    return ProxyConfiguration(profile_id="t", config_path=core_config([17890], name="travel"), core_path=fake_core)


# ============================================================================
# FAKES
# ============================================================================


class TestFakes:
    """Tests that the fakes satisfy the collaborator protocols."""

    def test_protocols(self, provider):
        """Test the fakes are structural matches."""
        assert isinstance(provider, ITunnelProvider)
        assert isinstance(FakeTunnelProfile(), ITunnelProfile)


# ============================================================================
# START
# ============================================================================


class TestStart:
    """Tests for TunnelEngine.start()."""

    @pytest.mark.asyncio
    async def test_first_start_installs_profile(self, engine, provider, profile_config):
        """Test a missing profile is installed and the config handed over."""
        await engine.start(profile_config)

        assert provider.installs == 1
        assert engine.status.is_connected
        info = engine.status.info
        assert info.engine_type == EngineType.TUNNEL
        assert info.config_name == "travel"
        assert info.listen_ports == (17890,)

        shared = provider.shared_config_path
        assert provider.profile.options == {"ConfigPath": str(shared)}
        assert shared.read_text() == profile_config.config_path.read_text()

    @pytest.mark.asyncio
    async def test_existing_profile_reused(self, engine, provider, profile_config):
        """Test an installed profile is loaded, not reinstalled."""
        provider.profile = FakeTunnelProfile()
        await engine.start(profile_config)
        assert provider.installs == 0

    @pytest.mark.asyncio
    async def test_not_installed(self, engine, provider, profile_config):
        """Test a missing tunnel extension is tunnel_not_installed."""
        provider.installed = False
        with pytest.raises(ProxyError) as exc_info:
            await engine.start(profile_config)
        assert exc_info.value.kind == ProxyErrorKind.TUNNEL_NOT_INSTALLED
        assert engine.status.is_error

    @pytest.mark.asyncio
    async def test_not_approved(self, engine, provider, profile_config):
        """Test an unapproved extension is tunnel_not_approved."""
        provider.approved = False
        with pytest.raises(ProxyError) as exc_info:
            await engine.start(profile_config)
        assert exc_info.value.kind == ProxyErrorKind.TUNNEL_NOT_APPROVED

    @pytest.mark.asyncio
    async def test_load_failure(self, engine, provider, profile_config):
        """Test a platform error while loading is tunnel_load_failed."""
        provider.load_error = OSError("preferences locked")
        with pytest.raises(ProxyError) as exc_info:
            await engine.start(profile_config)
        assert exc_info.value.kind == ProxyErrorKind.TUNNEL_LOAD_FAILED
        assert "preferences locked" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_provider_crash_ends_in_error(self, engine, provider, profile_config):
        """Test an unexpected provider exception is unknown and leaves the error state."""
        provider.check_error = RuntimeError("extension database corrupt")

        with pytest.raises(ProxyError) as exc_info:
            await engine.start(profile_config)

        assert exc_info.value.kind == ProxyErrorKind.UNKNOWN
        assert "extension database corrupt" in exc_info.value.detail
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert engine.status.is_error

        provider.check_error = None
        await engine.start(profile_config)
        assert engine.status.is_connected

    @pytest.mark.asyncio
    async def test_refused(self, engine, provider, profile_config):
        """Test a tunnel that drops during start reports the OS reason."""
        provider.profile = FakeTunnelProfile()
        provider.profile.refuse = "configuration rejected"

        with pytest.raises(ProxyError) as exc_info:
            await engine.start(profile_config)

        assert exc_info.value.kind == ProxyErrorKind.TUNNEL_START_FAILED
        assert exc_info.value.detail == "configuration rejected"
        assert engine.status.is_error

    @pytest.mark.asyncio
    async def test_connect_timeout(self, engine, provider, profile_config):
        """Test a tunnel stuck connecting times out and is stopped."""
        provider.profile = FakeTunnelProfile()
        provider.profile.auto_connect = False

        with pytest.raises(ProxyError) as exc_info:
            await engine.start(profile_config)

        assert exc_info.value.kind == ProxyErrorKind.TIMEOUT
        assert provider.profile.stop_calls == 1

    @pytest.mark.asyncio
    async def test_start_while_connected(self, engine, profile_config):
        """Test a second start is rejected."""
        await engine.start(profile_config)
        with pytest.raises(InvalidStateError):
            await engine.start(profile_config)


# ============================================================================
# STATE MAPPING AND STOP
# ============================================================================


class TestStateMapping:
    """Tests for mapping OS tunnel states onto status."""

    @pytest.mark.asyncio
    async def test_stop(self, engine, provider, profile_config):
        """Test stop waits for the OS to report the tunnel down."""
        await engine.start(profile_config)
        kinds = []
        engine.subscribe(lambda prev, cur: kinds.append(cur.kind))

        await engine.stop()

        assert kinds == [StatusKind.DISCONNECTING, StatusKind.DISCONNECTED]
        assert provider.profile.state == TunnelState.DISCONNECTED
        assert provider.profile.stop_calls == 1

    @pytest.mark.asyncio
    async def test_unexpected_disconnect(self, engine, provider, profile_config):
        """Test the OS dropping the tunnel is an error with its reason."""
        await engine.start(profile_config)

        provider.profile.set_state(TunnelState.DISCONNECTED, "network changed")

        assert engine.status.is_error
        assert engine.status.error.kind == ProxyErrorKind.TUNNEL_START_FAILED
        assert engine.status.error.detail == "Tunnel disconnected unexpectedly: network changed"

    @pytest.mark.asyncio
    async def test_reasserting_keeps_connected(self, engine, provider, profile_config):
        """Test transient OS states leave the status alone."""
        await engine.start(profile_config)
        provider.profile.set_state(TunnelState.REASSERTING)
        assert engine.status.is_connected

    @pytest.mark.asyncio
    async def test_restart_after_drop(self, engine, provider, profile_config):
        """Test the engine starts again after an unexpected drop."""
        await engine.start(profile_config)
        provider.profile.set_state(TunnelState.DISCONNECTED, "network changed")
        await engine.start(profile_config)
        assert engine.status.is_connected


class TestValidate:
    """Tests for validate()."""

    @pytest.mark.asyncio
    async def test_collects_all_problems(self, engine, provider, fake_core, tmp_path):
        """Test config and prerequisite problems are both reported."""
        provider.installed = False
        config = ProxyConfiguration("t", tmp_path / "missing.json", fake_core)
        kinds = [e.kind for e in await engine.validate(config)]
        assert kinds == [ProxyErrorKind.CONFIG_NOT_FOUND, ProxyErrorKind.TUNNEL_NOT_INSTALLED]
