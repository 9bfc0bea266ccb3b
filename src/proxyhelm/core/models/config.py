"""Configuration models using Pydantic."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Process names treated as proxy cores when reclaiming ports and interfaces
DEFAULT_CORE_FAMILY = [
    "sing-box",
    "clash",
    "mihomo",
    "v2ray",
    "xray",
    "trojan",
    "ss-local",
    "ssr-local",
]


class CoreConfig(BaseModel):
    """Proxy core binary configuration."""

    binary_name: str = "sing-box"
    binary_path: Path | None = None
    cores_dir: Path = Path.home() / ".proxyhelm" / "cores"
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    started_marker: str = "sing-box started"


class PathsConfig(BaseModel):
    """Filesystem locations."""

    data_dir: Path = Path.home() / ".proxyhelm"
    profiles_dir: Path = Path.home() / ".proxyhelm" / "profiles"
    # Runtime configs written by the materializer; must differ from profiles_dir
    configs_dir: Path = Path.home() / ".proxyhelm" / "configs"
    runtime_dir: Path = Path(tempfile.gettempdir()) / "proxyhelm"


class EphemeralConfig(BaseModel):
    """Elevated one-shot process strategy settings."""

    elevator: Literal["auto", "osascript", "pkexec", "sudo", "none"] = "auto"
    launch_timeout: float = Field(default=60.0, ge=1.0)  # includes time spent in the prompt
    ready_timeout: float = Field(default=30.0, ge=1.0)
    port_poll_interval: float = Field(default=0.5, gt=0)
    interface_poll_interval: float = Field(default=1.0, gt=0)
    monitor_interval: float = Field(default=1.0, gt=0)
    stop_timeout: float = Field(default=5.0, ge=0.5)
    supervisor_poll_interval: float = Field(default=0.2, gt=0)
    log_tail_lines: int = Field(default=30, ge=1)


class DaemonConfig(BaseModel):
    """Persistent helper service settings."""

    socket_path: Path = Path("/tmp/proxyhelm/proxyhelm-service.sock")
    request_timeout: float = Field(default=30.0, ge=1.0)
    probe_timeout: float = Field(default=2.0, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)
    fast_poll_interval: float = Field(default=0.5, gt=0)
    fast_polls: int = Field(default=4, ge=0)  # fast polls after each transition
    log_buffer_lines: int = Field(default=1000, ge=10)
    log_response_lines: int = Field(default=100, ge=1)
    startup_grace: float = Field(default=0.5, ge=0)
    auth_token: str | None = None


class TunnelConfig(BaseModel):
    """OS tunnel strategy settings."""

    connect_timeout: float = Field(default=30.0, ge=1.0)
    poll_interval: float = Field(default=0.5, gt=0)


class ConflictConfig(BaseModel):
    """Port and interface reclamation settings."""

    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.5, ge=0)
    kill_grace: float = Field(default=1.0, ge=0)
    interface_release_timeout: float = Field(default=6.0, ge=0)
    interface_poll_interval: float = Field(default=0.2, gt=0)
    interface_prefix: str = "utun"
    interface_search_start: int = Field(default=199, ge=0)
    process_names: list[str] = Field(default_factory=lambda: list(DEFAULT_CORE_FAMILY))


class ReconnectConfig(BaseModel):
    """Automatic reconnect after an unexpected drop."""

    enabled: bool = True
    delay: float = Field(default=3.0, ge=0)


class LogConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    structured: bool = False
    file: Path | None = None


class Config(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROXYHELM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    core: CoreConfig = Field(default_factory=CoreConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    ephemeral: EphemeralConfig = Field(default_factory=EphemeralConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    tunnel: TunnelConfig = Field(default_factory=TunnelConfig)
    conflicts: ConflictConfig = Field(default_factory=ConflictConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    logs: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def from_yaml(cls, path: Path | str) -> Config:
        """Load configuration from YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open() as f:
            data = yaml.safe_load(f)

        return cls(**data) if data else cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Create configuration from dictionary."""
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return self.model_dump(mode="json")

    def to_yaml(self, path: Path | str) -> None:
        """Save configuration to YAML file."""
        import yaml

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)

    def merge(self, other: Config) -> Config:
        """Merge with another config, other takes precedence."""
        self_dict = self.model_dump()
        other_dict = other.model_dump()

        def deep_merge(base: dict, override: dict) -> dict:
            result = base.copy()
            for key, value in override.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = deep_merge(result[key], value)
                else:
                    result[key] = value
            return result

        merged = deep_merge(self_dict, other_dict)
        return Config(**merged)
