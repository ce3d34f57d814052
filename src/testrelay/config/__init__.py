#
# config/__init__.py
#
"""
Configuration handling sub-package for testrelay.

Exports the loading function and core configuration model.
"""

from .loader import DEFAULT_CONFIG_NAME, default_config, load_config
from .models import (
    AnalysisConfig,
    DebuggerConfig,
    DiscoveryConfig,
    GlobalConfig,
    RunnerConfig,
    TestRelayConfig,
    WorkspaceConfig,
)

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "AnalysisConfig",
    "DebuggerConfig",
    "DiscoveryConfig",
    "GlobalConfig",
    "RunnerConfig",
    "TestRelayConfig",
    "WorkspaceConfig",
    "default_config",
    "load_config",
]

# 🔼⚙️
