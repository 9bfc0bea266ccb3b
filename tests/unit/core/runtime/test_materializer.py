"""Tests for config analysis and materialization."""

from __future__ import annotations

import json

import pytest

from proxyhelm.core.models.errors import ProxyError, ProxyErrorKind
from proxyhelm.core.models.profile import Profile
from proxyhelm.core.runtime.materializer import (
    ConfigMaterializer,
    analyze_config,
    analyze_config_file,
    load_config,
    patched_config_path,
    rename_tun_interfaces,
    sanitize_interface_name,
)


def tun_inbound(**overrides):
    inbound = {"type": "tun", "tag": "tun-in", "interface_name": "utun7", "auto_route": True}
    inbound.update(overrides)
    return inbound


# ============================================================================
# ANALYSIS TESTS
# ============================================================================


class TestAnalyzeConfig:
    """Tests for inbound summaries."""

    def test_listen_ports(self):
        """Test ports are collected in order without duplicates."""
        summary = analyze_config(
            {
                "inbounds": [
                    {"type": "mixed", "listen_port": 7890},
                    {"type": "socks", "listen_port": 1080},
                    {"type": "http", "listen_port": 7890},
                ]
            }
        )
        assert summary.listen_ports == (7890, 1080)
        assert not summary.has_tun

    @pytest.mark.parametrize("port", [0, 70000, "8080", True, None])
    def test_invalid_ports_ignored(self, port):
        """Test out of range and non-integer ports are skipped."""
        summary = analyze_config({"inbounds": [{"type": "mixed", "listen_port": port}]})
        assert summary.listen_ports == ()

    def test_tun_interface(self):
        """Test TUN inbounds report their sanitized interface name."""
        summary = analyze_config({"inbounds": [tun_inbound(interface_name="utun 7;rm")]})
        assert summary.has_tun
        assert summary.interfaces == ("utun7rm",)
        assert summary.auto_route is True

    def test_system_proxy_hint(self):
        """Test the platform HTTP proxy becomes a system proxy setting."""
        inbound = tun_inbound(platform={"http_proxy": {"enabled": True, "server_port": 2080}})
        summary = analyze_config({"inbounds": [inbound]})
        assert summary.system_proxy is not None
        assert summary.system_proxy.host == "127.0.0.1"
        assert summary.system_proxy.port == 2080
        assert summary.system_proxy.enabled

    def test_disabled_system_proxy_ignored(self):
        """Test a disabled platform proxy gives no hint."""
        inbound = tun_inbound(platform={"http_proxy": {"enabled": False, "server_port": 2080}})
        assert analyze_config({"inbounds": [inbound]}).system_proxy is None

    def test_route_hint(self):
        """Test TUN without auto_route and without a proxy hint is flagged."""
        assert analyze_config({"inbounds": [tun_inbound(auto_route=False)]}).needs_route_hint
        assert not analyze_config({"inbounds": [tun_inbound()]}).needs_route_hint

    def test_no_inbounds(self):
        """Test an empty config yields an empty summary."""
        summary = analyze_config({})
        assert summary.listen_ports == ()
        assert summary.interfaces == ()

    def test_inbounds_not_a_list(self):
        """Test a malformed inbounds section is config_invalid."""
        with pytest.raises(ProxyError) as exc_info:
            analyze_config({"inbounds": {"type": "mixed"}})
        assert exc_info.value.kind == ProxyErrorKind.CONFIG_INVALID

    def test_sanitize(self):
        """Test only safe characters survive."""
        assert sanitize_interface_name("tun-0_a/../b") == "tun-0_ab"


# ============================================================================
# FILE TESTS
# ============================================================================


class TestConfigFiles:
    """Tests for loading and patching config files."""

    def test_load_missing(self, tmp_path):
        """Test a missing file is config_not_found."""
        with pytest.raises(ProxyError) as exc_info:
            load_config(tmp_path / "missing.json")
        assert exc_info.value.kind == ProxyErrorKind.CONFIG_NOT_FOUND

    def test_load_malformed(self, tmp_path):
        """Test malformed JSON is config_invalid."""
        path = tmp_path / "bad.json"
        path.write_text("{")
        with pytest.raises(ProxyError) as exc_info:
            load_config(path)
        assert exc_info.value.kind == ProxyErrorKind.CONFIG_INVALID

    def test_analyze_file(self, core_config):
        """Test analysis straight from disk."""
        path = core_config([2080, 2081])
        assert analyze_config_file(path).listen_ports == (2080, 2081)

    def test_patched_path(self, tmp_path):
        """Test the patched copy sits next to the original."""
        assert patched_config_path(tmp_path / "home.json") == tmp_path / "home.patched.json"

    def test_rename_tun_interfaces(self):
        """Test renaming copies the config and pins every TUN inbound."""
        data = {"inbounds": [tun_inbound(), {"type": "mixed", "listen_port": 1}]}
        patched = rename_tun_interfaces(data, "utun199")
        assert patched["inbounds"][0]["interface_name"] == "utun199"
        assert data["inbounds"][0]["interface_name"] == "utun7"
        assert "interface_name" not in patched["inbounds"][1]


# ============================================================================
# MATERIALIZER TESTS
# ============================================================================


class TestConfigMaterializer:
    """Tests for writing profiles to disk."""

    def test_materialize_clears_interface_names(self, tmp_path):
        """Test hard-coded TUN names are dropped from the written config."""
        profile = Profile(
            name="Home",
            configuration=json.dumps({"inbounds": [tun_inbound()]}),
            id="home",
        )
        path = ConfigMaterializer(tmp_path / "profiles").materialize(profile)

        assert path == tmp_path / "profiles" / "home.json"
        written = json.loads(path.read_text())
        assert "interface_name" not in written["inbounds"][0]

    def test_materialize_keeps_names_when_disabled(self, tmp_path):
        """Test the transform can be switched off."""
        profile = Profile(name="Home", configuration=json.dumps({"inbounds": [tun_inbound()]}))
        path = ConfigMaterializer(tmp_path, clear_interface_names=False).materialize(profile)
        assert json.loads(path.read_text())["inbounds"][0]["interface_name"] == "utun7"

    def test_materialize_sanitizes_file_name(self, tmp_path):
        """Test the profile id cannot escape the output directory."""
        profile = Profile(name="x", configuration="{}", id="../../etc/passwd")
        path = ConfigMaterializer(tmp_path).materialize(profile)
        assert path.parent == tmp_path
        assert path.name == "etcpasswd.json"

    def test_materialize_invalid(self, tmp_path):
        """Test an unparsable profile is config_invalid and writes nothing."""
        profile = Profile(name="x", configuration="nope")
        with pytest.raises(ProxyError):
            ConfigMaterializer(tmp_path / "out").materialize(profile)
        assert not (tmp_path / "out").exists()
