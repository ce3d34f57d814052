#
# config/loader.py
#
"""
Loads the testrelay TOML configuration into attrs models.
"""

import os
import tomllib
from pathlib import Path
from typing import Any

import structlog

from testrelay.exceptions import ConfigurationError
from testrelay.telemetry import StructLogger

from .models import (
    AnalysisConfig,
    DebuggerConfig,
    DiscoveryConfig,
    GlobalConfig,
    RunnerConfig,
    TestRelayConfig,
    WorkspaceConfig,
)

log: StructLogger = structlog.get_logger("config.loader")

DEFAULT_CONFIG_NAME = "testrelay.toml"
LOG_LEVEL_ENV_VAR = "TESTRELAY_LOG_LEVEL"


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"Section '[{name}]' must be a table, got {type(section).__name__}")
    return section


def _build(model: type, name: str, values: dict[str, Any]) -> Any:
    try:
        return model(**values)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid '[{name}]' section: {e}") from e


def _load_workspaces(raw: dict[str, Any], base_dir: Path) -> dict[str, WorkspaceConfig]:
    workspaces: dict[str, WorkspaceConfig] = {}
    for key, values in raw.items():
        ws_log = log.bind(workspace=key)
        if not isinstance(values, dict) or "path" not in values:
            raise ConfigurationError(f"Workspace '{key}' must be a table with a 'path' key")

        path = Path(values["path"]).expanduser()
        if not path.is_absolute():
            path = (base_dir / path).resolve()

        workspace = _build(
            WorkspaceConfig,
            f"workspaces.{key}",
            {"path": path, "name": values.get("name", key), "enabled": values.get("enabled", True)},
        )
        if not path.is_dir():
            ws_log.warning("Workspace path does not exist or is not a directory, disabling", path=str(path))
            workspace._path_valid = False
        workspaces[key] = workspace
    return workspaces


def load_config(config_path: Path) -> TestRelayConfig:
    """
    Reads and validates a TOML configuration file.

    Relative workspace paths are resolved against the configuration file's directory.
    When no workspace is declared, the directory holding the file is used as the only one.
    """
    load_log = log.bind(config_path=str(config_path))
    load_log.debug("Loading configuration", emoji="📄")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Could not read {config_path}: {e}") from e

    base_dir = config_path.resolve().parent
    global_values = dict(_section(data, "global"))
    if env_level := os.environ.get(LOG_LEVEL_ENV_VAR):
        global_values["log_level"] = env_level

    raw_workspaces = _section(data, "workspaces")
    workspaces = _load_workspaces(raw_workspaces, base_dir)
    if not workspaces:
        workspaces = {base_dir.name: WorkspaceConfig(path=base_dir, name=base_dir.name)}

    config = TestRelayConfig(
        workspaces=workspaces,
        global_config=_build(GlobalConfig, "global", global_values),
        discovery=_build(DiscoveryConfig, "discovery", _section(data, "discovery")),
        runner=_build(RunnerConfig, "runner", _section(data, "runner")),
        analysis=_build(AnalysisConfig, "analysis", _section(data, "analysis")),
        debugger=_build(DebuggerConfig, "debugger", _section(data, "debugger")),
        config_file_path=config_path,
    )
    load_log.info(
        "Configuration loaded",
        workspaces=len(config.workspaces),
        enabled=len(config.enabled_workspaces),
        emoji="✅",
    )
    return config


def default_config(workspace: Path) -> TestRelayConfig:
    """Configuration used when no file exists: one workspace, all defaults."""
    path = workspace.resolve()
    return TestRelayConfig(workspaces={path.name: WorkspaceConfig(path=path, name=path.name)})


# 🔼⚙️
