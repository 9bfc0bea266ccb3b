"""Per-attempt runtime configuration handed to engines."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from proxyhelm.core.models.errors import ProxyError


class LogLevel(str, Enum):
    """Proxy core log level."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ProxyConfiguration:
    """Everything an engine needs to launch the core for one attempt."""

    profile_id: str
    config_path: Path
    core_path: Path
    log_level: LogLevel = LogLevel.INFO
    display_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "config_path", Path(self.config_path))
        object.__setattr__(self, "core_path", Path(self.core_path))
        if not self.display_name:
            object.__setattr__(self, "display_name", self.config_path.stem)

    def validate(self) -> None:
        """Check the config and core files on disk.

        Raises:
            ProxyError: config_not_found, config_invalid, core_not_found or
                core_start_failed when a file is missing or unusable
        """
        if not self.config_path.is_file():
            raise ProxyError.config_not_found()
        if not os.access(self.config_path, os.R_OK):
            raise ProxyError.config_invalid("Configuration file is not readable")
        if not self.core_path.is_file():
            raise ProxyError.core_not_found()
        if not os.access(self.core_path, os.X_OK):
            raise ProxyError.core_start_failed("Core file is not executable")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "profile_id": self.profile_id,
            "config_path": str(self.config_path),
            "core_path": str(self.core_path),
            "log_level": self.log_level.value,
            "display_name": self.display_name,
        }
