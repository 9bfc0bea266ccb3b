"""Runtime collaborators: config materialization, core binaries, system proxy."""

from proxyhelm.core.runtime.binaries import CoreBinaryResolver
from proxyhelm.core.runtime.materializer import (
    ConfigMaterializer,
    InboundSummary,
    analyze_config,
    analyze_config_file,
    load_config,
)
from proxyhelm.core.runtime.system_proxy import create_system_proxy_controller

__all__ = [
    "ConfigMaterializer",
    "CoreBinaryResolver",
    "InboundSummary",
    "analyze_config",
    "analyze_config_file",
    "create_system_proxy_controller",
    "load_config",
]
