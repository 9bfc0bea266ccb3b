"""Tests for ConnectionStatus and ConnectionInfo."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from proxyhelm.core.models.errors import ProxyError
from proxyhelm.core.models.status import (
    ConnectionInfo,
    ConnectionStatus,
    EngineType,
    StatusKind,
    format_duration,
)


@pytest.fixture
def info() -> ConnectionInfo:
    return ConnectionInfo(
        engine_type=EngineType.DAEMON,
        config_name="home",
        start_time=datetime(2026, 1, 1, 12, 0, 0),
        listen_ports=(2080,),
    )


# ============================================================================
# ENGINE TYPE TESTS
# ============================================================================


class TestEngineType:
    """Tests for EngineType parsing and display."""

    def test_from_string(self):
        """Test parsing is case and whitespace insensitive."""
        assert EngineType.from_string(" Daemon ") == EngineType.DAEMON

    def test_from_string_unknown(self):
        """Test unknown names raise ValueError."""
        with pytest.raises(ValueError, match="Unknown engine type"):
            EngineType.from_string("wireguard")

    def test_display_names(self):
        """Test every engine has a display name."""
        assert EngineType.EPHEMERAL.display_name == "Elevated process"
        assert EngineType.DAEMON.display_name == "Helper service"
        assert EngineType.TUNNEL.display_name == "System tunnel"


# ============================================================================
# DURATION TESTS
# ============================================================================


class TestFormatDuration:
    """Tests for duration formatting."""

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [
            (0, "00:00"),
            (59.9, "00:59"),
            (61, "01:01"),
            (3600, "1:00:00"),
            (3725, "1:02:05"),
            (-5, "00:00"),
        ],
    )
    def test_format(self, seconds, expected):
        """Test MM:SS below an hour and H:MM:SS above."""
        assert format_duration(seconds) == expected

    def test_info_duration(self, info):
        """Test connected duration is measured from start_time."""
        now = info.start_time + timedelta(minutes=2, seconds=3)
        assert info.duration(now) == timedelta(minutes=2, seconds=3)
        assert info.formatted_duration(now) == "02:03"


# ============================================================================
# STATUS TESTS
# ============================================================================


class TestConnectionStatus:
    """Tests for status predicates and text."""

    def test_disconnected(self):
        """Test the idle state."""
        status = ConnectionStatus.disconnected()
        assert status.kind == StatusKind.DISCONNECTED
        assert not status.is_connected
        assert status.can_toggle
        assert status.accepts_start
        assert status.short_text == "Off"
        assert status.display_text == "Disconnected"

    @pytest.mark.parametrize("factory", [ConnectionStatus.connecting, ConnectionStatus.disconnecting])
    def test_transitioning(self, factory):
        """Test transitional states refuse toggles."""
        status = factory()
        assert status.is_transitioning
        assert not status.can_toggle
        assert not status.accepts_start

    def test_connected(self, info):
        """Test connected carries info and renders the engine."""
        status = ConnectionStatus.connected(info)
        assert status.is_connected
        assert not status.accepts_start
        assert status.display_text == "Connected (Helper service)"
        assert status.short_text == "On"
        assert status.connected_duration(info.start_time + timedelta(seconds=5)) == timedelta(seconds=5)

    def test_error(self):
        """Test error carries the error and accepts a new start."""
        status = ConnectionStatus.failed(ProxyError.port_conflict([2080]))
        assert status.is_error
        assert status.accepts_start
        assert status.display_text == "Error: Port(s) already in use: 2080"
        assert str(status) == status.display_text
        assert status.connected_duration() is None

    def test_equality(self, info):
        """Test statuses are values."""
        assert ConnectionStatus.connected(info) == ConnectionStatus.connected(info)
        assert ConnectionStatus.disconnected() != ConnectionStatus.connecting()

    def test_to_dict(self, info):
        """Test serialization of a connected status."""
        data = ConnectionStatus.connected(info).to_dict()
        assert data["status"] == "connected"
        assert data["info"]["engine_type"] == "daemon"
        assert data["info"]["listen_ports"] == [2080]
        assert data["error"] is None
