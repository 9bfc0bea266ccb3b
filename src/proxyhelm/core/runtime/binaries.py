"""Locating the proxy core executable."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import structlog

from proxyhelm.core.models.config import CoreConfig
from proxyhelm.core.models.errors import ProxyError

logger = structlog.get_logger(__name__)


class CoreBinaryResolver:
    """Resolves the core binary: explicit path, then installed versions, then PATH."""

    def __init__(self, config: CoreConfig | None = None) -> None:
        self.config = config or CoreConfig()

    def installed(self) -> list[Path]:
        """Executables under ``cores_dir/<version>/``, newest modification first."""
        cores_dir = self.config.cores_dir
        if not cores_dir.is_dir():
            return []
        found = [
            candidate
            for candidate in cores_dir.glob(f"*/{self.config.binary_name}")
            if candidate.is_file() and os.access(candidate, os.X_OK)
        ]
        return sorted(found, key=lambda p: p.stat().st_mtime, reverse=True)

    def resolve(self) -> Path:
        """
        Find the core executable.

        Raises:
            ProxyError: core_not_found when no candidate exists
        """
        if self.config.binary_path is not None:
            path = self.config.binary_path.expanduser()
            if not path.is_file():
                raise ProxyError.core_not_found()
            return path

        installed = self.installed()
        if installed:
            logger.debug("Using installed core", path=str(installed[0]))
            return installed[0]

        on_path = shutil.which(self.config.binary_name)
        if on_path:
            return Path(on_path)

        raise ProxyError.core_not_found()
