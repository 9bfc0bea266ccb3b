"""Helper service internals."""

from proxyhelm.core.daemon.core_manager import CoreManager, CoreManagerError

__all__ = ["CoreManager", "CoreManagerError"]
