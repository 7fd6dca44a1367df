"""Unified configuration system for rollbackctl.

Configuration is stored in ./rollbackctl.toml and organized into sections.

Configuration loading priority:
1. Environment variables (highest)
2. Config file (./rollbackctl.toml, or $ROLLBACKCTL_CONFIG)
3. Defaults (lowest)

Sections:
    [store]      - Catalog database and artifact locations
    [retention]  - Per-environment retention caps
    [execution]  - Step and command timeouts, auto-restore default
    [snapshots]  - What the configuration and application-code snapshots cover
    [commands]   - Operator commands for the data platform and live environment

Example:
    from rollbackctl.config import build_controller, load_config

    config = load_config()
    controller = build_controller(config)
    controller.create_rollback_point("staging")
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import tomli_w

if TYPE_CHECKING:
    from .observability import EventSink
    from .recovery import RecoveryController

logger = logging.getLogger(__name__)

# Default config location, relative to the working directory
DEFAULT_CONFIG_FILE = "rollbackctl.toml"


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class StoreConfig:
    """Catalog storage settings.

    Attributes:
        path: SQLite database holding rollback points and executions.
        artifacts_dir: Directory snapshot artifacts are written to.
    """

    path: str = ".rollbacks/rollbacks.db"
    artifacts_dir: str = ".rollbacks/snapshots"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreConfig:
        """Create from dictionary."""
        return cls(
            path=data.get("path", ".rollbacks/rollbacks.db"),
            artifacts_dir=data.get("artifacts_dir", ".rollbacks/snapshots"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "path": self.path,
            "artifacts_dir": self.artifacts_dir,
        }


@dataclass
class RetentionConfig:
    """Retention caps, applied per environment.

    Attributes:
        max_points_per_environment: Rollback points kept; oldest are pruned.
        max_executions_per_environment: Finished executions kept.
    """

    max_points_per_environment: int = 50
    max_executions_per_environment: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetentionConfig:
        """Create from dictionary."""
        return cls(
            max_points_per_environment=int(data.get("max_points_per_environment", 50)),
            max_executions_per_environment=int(
                data.get("max_executions_per_environment", 100)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_points_per_environment": self.max_points_per_environment,
            "max_executions_per_environment": self.max_executions_per_environment,
        }


@dataclass
class ExecutionConfig:
    """Rollback execution settings.

    Attributes:
        step_timeout: Time budget in seconds for each check and step.
        command_timeout: Time budget in seconds for each external command,
            never more than what is left of the enclosing step budget.
        auto_restore: Restore the safety snapshot when a rollback fails.
    """

    step_timeout: float = 600.0
    command_timeout: float = 300.0
    auto_restore: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionConfig:
        """Create from dictionary."""
        return cls(
            step_timeout=float(data.get("step_timeout", 600.0)),
            command_timeout=float(data.get("command_timeout", 300.0)),
            auto_restore=bool(data.get("auto_restore", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "step_timeout": self.step_timeout,
            "command_timeout": self.command_timeout,
            "auto_restore": self.auto_restore,
        }


@dataclass
class SnapshotConfig:
    """What gets captured.

    Attributes:
        project_root: Base directory of the deployed checkout.
        config_files: Configuration files to capture; may use ``{environment}``.
        version_file: File the release version is read from.
    """

    project_root: str = "."
    config_files: list[str] = field(
        default_factory=lambda: [".env.{environment}", "pyproject.toml"]
    )
    version_file: str = "pyproject.toml"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotConfig:
        """Create from dictionary."""
        return cls(
            project_root=data.get("project_root", "."),
            config_files=list(
                data.get("config_files", [".env.{environment}", "pyproject.toml"])
            ),
            version_file=data.get("version_file", "pyproject.toml"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "project_root": self.project_root,
            "config_files": self.config_files,
            "version_file": self.version_file,
        }


@dataclass
class CommandsConfig:
    """Operator commands. An empty command disables the hook it backs.

    Attributes:
        data_dump: Dumps the data store; receives ``{environment}`` and ``{output}``.
        data_restore: Restores a dump; receives ``{environment}`` and ``{input}``.
        data_ping: Probes data-store connectivity.
        data_integrity: Checks data-store consistency after a rollback.
        environment_status: Probes that the environment is reachable.
        stop_services: Quiesces the environment before restore.
        start_services: Resumes the environment after restore.
        health_check: Liveness probe run after a rollback.
        smoke_test: Smoke test run after a rollback.
        release_channel: Re-points the release channel at the restored revision.
        install_dependencies: Re-materializes dependencies after a code checkout.
    """

    data_dump: str = ""
    data_restore: str = ""
    data_ping: str = ""
    data_integrity: str = ""
    environment_status: str = ""
    stop_services: str = ""
    start_services: str = ""
    health_check: str = ""
    smoke_test: str = ""
    release_channel: str = ""
    install_dependencies: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommandsConfig:
        """Create from dictionary."""
        return cls(**{f.name: str(data.get(f.name, "") or "") for f in fields(cls)})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def hooks(self) -> dict[str, str]:
        """Commands that back environment hooks, without the data-platform ones."""
        skip = {"data_dump", "data_restore", "install_dependencies"}
        return {name: value for name, value in self.to_dict().items() if name not in skip}


# =============================================================================
# Main Configuration Class
# =============================================================================


@dataclass
class RollbackConfig:
    """Main rollbackctl configuration container."""

    store: StoreConfig = field(default_factory=StoreConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)

    # Metadata
    config_path: Path | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackConfig:
        """Create configuration from dictionary."""
        return cls(
            store=StoreConfig.from_dict(data.get("store", {})),
            retention=RetentionConfig.from_dict(data.get("retention", {})),
            execution=ExecutionConfig.from_dict(data.get("execution", {})),
            snapshots=SnapshotConfig.from_dict(data.get("snapshots", {})),
            commands=CommandsConfig.from_dict(data.get("commands", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "store": self.store.to_dict(),
            "retention": self.retention.to_dict(),
            "execution": self.execution.to_dict(),
            "snapshots": self.snapshots.to_dict(),
            "commands": self.commands.to_dict(),
        }

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if store_path := os.environ.get("ROLLBACKCTL_STORE_PATH"):
            self.store.path = store_path
        if artifacts_dir := os.environ.get("ROLLBACKCTL_ARTIFACTS_DIR"):
            self.store.artifacts_dir = artifacts_dir
        if step_timeout := os.environ.get("ROLLBACKCTL_STEP_TIMEOUT"):
            try:
                self.execution.step_timeout = float(step_timeout)
            except ValueError:
                logger.warning("Ignoring invalid ROLLBACKCTL_STEP_TIMEOUT=%r", step_timeout)

    def resolve_path(self, value: str) -> Path:
        """Resolve a configured path relative to the config file's directory."""
        path = Path(value).expanduser()
        if path.is_absolute() or self.config_path is None:
            return path
        return self.config_path.parent / path


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    if custom_path := os.environ.get("ROLLBACKCTL_CONFIG"):
        return Path(custom_path)
    return Path.cwd() / DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> RollbackConfig:
    """Load configuration from TOML file.

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        RollbackConfig with settings from file and environment.

    Raises:
        ValueError: If the file exists but is not valid TOML.
    """
    path = config_path or get_config_path()

    config = RollbackConfig()
    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config file {path}: {e}") from e

        config = RollbackConfig.from_dict(data)
        config.last_modified = datetime.fromtimestamp(path.stat().st_mtime)
    else:
        logger.debug("No config file at %s, using defaults", path)

    config.config_path = path
    config.apply_env_overrides()
    return config


def save_config(config: RollbackConfig, config_path: Path | None = None) -> Path:
    """Save configuration to TOML file.

    Returns:
        The path written.
    """
    path = config_path or config.config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "wb") as f:
        tomli_w.dump(config.to_dict(), f)

    config.config_path = path
    config.last_modified = datetime.now()
    logger.info("Saved config to %s", path)
    return path


# =============================================================================
# Assembly
# =============================================================================


def build_controller(
    config: RollbackConfig, events: EventSink | None = None
) -> RecoveryController:
    """Assemble a recovery controller and its collaborators from configuration."""
    from .collaborators import CommandDataPlatform, GitClient, ProcessShell
    from .recovery import (
        EnvironmentHooks,
        ExecutionEngine,
        RecoveryController,
        RollbackPointStore,
        SnapshotManager,
        ValidationEngine,
    )

    project_root = config.resolve_path(config.snapshots.project_root)
    artifacts_dir = config.resolve_path(config.store.artifacts_dir)
    commands = config.commands

    shell = ProcessShell(cwd=project_root, timeout=config.execution.command_timeout)
    snapshots = SnapshotManager(
        artifacts_dir=artifacts_dir,
        project_root=project_root,
        config_files=config.snapshots.config_files,
        version_file=config.snapshots.version_file or None,
        data_platform=CommandDataPlatform(
            shell,
            artifacts_dir,
            dump_command=commands.data_dump or None,
            restore_command=commands.data_restore or None,
        ),
        vcs=GitClient(shell),
        shell=shell,
        install_command=commands.install_dependencies or None,
    )
    store = RollbackPointStore(
        config.resolve_path(config.store.path),
        max_points=config.retention.max_points_per_environment,
        max_executions=config.retention.max_executions_per_environment,
    )
    hooks = EnvironmentHooks(shell=shell, commands=commands.hooks())

    controller_events = events
    if controller_events is None:
        from .observability import LoggingEventSink

        controller_events = LoggingEventSink()

    return RecoveryController(
        store=store,
        snapshots=snapshots,
        hooks=hooks,
        validation=ValidationEngine(config.execution.step_timeout, controller_events),
        execution=ExecutionEngine(config.execution.step_timeout, controller_events),
        events=controller_events,
        auto_restore=config.execution.auto_restore,
    )


# =============================================================================
# CLI Helpers
# =============================================================================


def format_config_for_display(config: RollbackConfig) -> str:
    """Format configuration for CLI display."""
    lines = []
    lines.append("rollbackctl Configuration")
    lines.append("=" * 50)
    lines.append("")

    if config.config_path:
        exists = "" if config.config_path.exists() else " (not found, using defaults)"
        lines.append(f"Config file: {config.config_path}{exists}")
        if config.last_modified:
            lines.append(f"Last modified: {config.last_modified.strftime('%Y-%m-%d %H:%M:%S')}")
        lines.append("")

    for section, values in config.to_dict().items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            if section == "commands" and not value:
                value = "(not set)"
            lines.append(f"  {key} = {value}")
        lines.append("")

    return "\n".join(lines).rstrip()
