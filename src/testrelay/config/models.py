#
# config/models.py
#
"""
Attrs-based data models for testrelay configuration structure.
"""

import logging
from pathlib import Path
from typing import Any

from attrs import define, field, mutable


# --- Validators ---
def _validate_log_level(inst: Any, attr: Any, value: str) -> None:
    """Validator for standard logging level names."""
    valid = logging._nameToLevel.keys()
    if value.upper() not in valid:
        raise ValueError(f"Invalid log_level '{value}'. Must be one of {list(valid)}.")


def _validate_positive_int(inst: Any, attr: Any, value: int) -> None:
    """Validator ensures integer is positive."""
    if not isinstance(value, int) or value <= 0:
        raise ValueError(f"Field '{attr.name}' must be positive integer, got {value}")


def _validate_positive_number(inst: Any, attr: Any, value: float) -> None:
    if not isinstance(value, int | float) or value <= 0:
        raise ValueError(f"Field '{attr.name}' must be a positive number, got {value}")


def _validate_non_empty(inst: Any, attr: Any, value: tuple[str, ...]) -> None:
    if not value:
        raise ValueError(f"Field '{attr.name}' must contain at least one entry")


def _to_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


# --- Discovery ---
@define(frozen=True, slots=True)
class DiscoveryConfig:
    """How test files are found on disk and how event ids are matched to nodes."""
    test_dirs: tuple[str, ...] = field(
        default=("test", "tests", "spec", "features"), converter=_to_tuple, validator=_validate_non_empty
    )
    file_patterns: tuple[str, ...] = field(
        default=("test_*.py", "*_test.py"), converter=_to_tuple, validator=_validate_non_empty
    )
    helper_files: tuple[str, ...] = field(default=("conftest.py", "__init__.py"), converter=_to_tuple)
    skip_dirs: tuple[str, ...] = field(default=("fixtures",), converter=_to_tuple)
    id_separators: tuple[str, ...] = field(
        default=("::", "#", "["), converter=_to_tuple, validator=_validate_non_empty
    )
    max_dynamic_children: int = field(default=500, validator=_validate_positive_int)


# --- Runner ---
@define(frozen=True, slots=True)
class RunnerConfig:
    """Settings for spawning test processes and receiving their event stream."""
    port_env_var: str = field(default="TESTRELAY_REPORTER_PORT")
    runner_env_var: str = field(default="TESTRELAY_TEST_RUNNER")
    injection_env_var: str = field(default="PYTEST_ADDOPTS")
    injection_template: str = field(default="-p {path}")
    default_reporter_paths: tuple[str, ...] = field(
        default=("testrelay.reporter.pytest_plugin",), converter=_to_tuple
    )
    event_queue_size: int = field(default=1000, validator=_validate_positive_int)
    terminate_grace_seconds: float = field(default=2.0, validator=_validate_positive_number)
    coverage_artifact: str = field(default=".testrelay/coverage_result.json")
    vendor_paths: tuple[str, ...] = field(
        default=("site-packages", "dist-packages", ".venv", "venv", "vendor", "node_modules"),
        converter=_to_tuple,
    )
    continuous_debounce_seconds: float = field(default=0.25, validator=_validate_positive_number)
    port_db_path: Path | None = field(default=None, converter=lambda v: Path(v).expanduser() if v else None)


# --- Collaborators ---
@define(frozen=True, slots=True)
class AnalysisConfig:
    """How to reach the language-analysis collaborator (a stdio language server)."""
    command: tuple[str, ...] = field(factory=tuple, converter=_to_tuple)
    discover_method: str = field(default="testrelay/discoverTests")
    resolve_method: str = field(default="testrelay/resolveTestCommands")
    timeout_seconds: float = field(default=30.0, validator=_validate_positive_number)


@define(frozen=True, slots=True)
class DebuggerConfig:
    """
    Template used by the subprocess debug launcher. ``{program}`` is the whole test command,
    ``{program_args}`` the same command without its leading Python interpreter.
    """
    command_template: str = field(
        default="python -m debugpy --listen localhost:5678 --wait-for-client {program_args}"
    )


# --- Workspace and Global Config Models ---
@mutable(slots=True)
class WorkspaceConfig:
    """
    Configuration for a workspace folder. Mutable to allow disabling on load if path invalid.
    """
    path: Path = field()
    name: str | None = field(default=None)
    enabled: bool = field(default=True)
    _path_valid: bool = field(default=True, repr=False, init=False)

    @property
    def display_name(self) -> str:
        return self.name or self.path.name


@define(frozen=True, slots=True)
class GlobalConfig:
    """Global default settings for testrelay."""
    log_level: str = field(default="INFO", validator=_validate_log_level)

    @property
    def numeric_log_level(self) -> int:
        return logging.getLevelName(self.log_level.upper())


@define(frozen=True, slots=True)
class TestRelayConfig:
    """Root configuration object for the testrelay application."""
    __test__ = False

    workspaces: dict[str, WorkspaceConfig] = field(factory=dict)
    global_config: GlobalConfig = field(factory=GlobalConfig, metadata={"toml_name": "global"})
    discovery: DiscoveryConfig = field(factory=DiscoveryConfig)
    runner: RunnerConfig = field(factory=RunnerConfig)
    analysis: AnalysisConfig = field(factory=AnalysisConfig)
    debugger: DebuggerConfig = field(factory=DebuggerConfig)
    config_file_path: Path | None = field(default=None)

    @property
    def enabled_workspaces(self) -> dict[str, WorkspaceConfig]:
        return {key: ws for key, ws in self.workspaces.items() if ws.enabled and ws._path_valid}


# 🔼⚙️
