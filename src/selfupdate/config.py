"""
Configuration management for the self-update orchestrator.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/selfupdate/config.yml or --config path)
3. Environment variables (SELFUPDATE_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/selfupdate/config.yml")

# Names understood by the participant factory table, in default order
KNOWN_PARTICIPANTS = ("snapshot", "git", "docker")

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether stdout records are rendered as JSON.
        log_dir: Optional directory for per-scope log files.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Render stdout records as JSON",
    )
    log_dir: str | None = Field(
        default=None,
        description="Directory receiving one log file per scope (git.log, docker.log, ...)",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        # Normalize 'warn' to 'warning'
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Process Configuration
# =============================================================================


class ProcessConfig(BaseModel):
    """External process execution settings.

    Attributes:
        default_timeout_seconds: Timeout applied to every external command.
    """

    default_timeout_seconds: float = Field(
        default=120.0,
        description="Timeout in seconds for external commands",
        gt=0,
    )


# =============================================================================
# Orchestrator Configuration
# =============================================================================


class OrchestratorConfig(BaseModel):
    """Pipeline configuration.

    Attributes:
        order: Participant names in pipeline order.
        check_before_update: Run the check phase before updating by default.
        history_path: Optional JSON file recording every run.
    """

    order: list[str] = Field(
        default_factory=lambda: list(KNOWN_PARTICIPANTS),
        description="Participants in pipeline order",
    )
    check_before_update: bool = Field(
        default=True,
        description="Skip the update when no participant reports pending work",
    )
    history_path: str | None = Field(
        default=None,
        description="Path to the update history JSON file",
    )

    @field_validator("order")
    @classmethod
    def validate_order(cls, v: list[str]) -> list[str]:
        """Reject unknown and duplicate participant names."""
        unknown = [name for name in v if name not in KNOWN_PARTICIPANTS]
        if unknown:
            raise ValueError(
                f"Unknown participants: {', '.join(unknown)}. "
                f"Must be among: {', '.join(KNOWN_PARTICIPANTS)}"
            )
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate participants in order: {v}")
        return v


# =============================================================================
# Participant Configuration
# =============================================================================


class GitConfig(BaseModel):
    """Source sync participant configuration.

    Attributes:
        repo_path: Working copy to keep in sync.
        remote_name: Name of the tracked remote.
        remote_url: Expected remote URL; enforced when set.
        branch: Default branch to follow.
        backup_prefix: Prefix of the backup branches.
        executable_patterns: Glob patterns of files made executable after update.
    """

    repo_path: str = Field(default=".", description="Working copy path")
    remote_name: str = Field(default="origin", description="Tracked remote name")
    remote_url: str | None = Field(
        default=None,
        description="Expected remote URL (used to initialize or correct the remote)",
    )
    branch: str = Field(default="main", description="Branch to follow")
    backup_prefix: str = Field(
        default="backup/",
        description="Prefix of backup branches created before each update",
    )
    executable_patterns: list[str] = Field(
        default_factory=lambda: ["*.sh", "*.py"],
        description="Changed files matching these patterns are chmod 755",
    )


class DockerConfig(BaseModel):
    """Container redeploy participant configuration.

    Attributes:
        container_name: Name of the managed container.
        image_name: Image tag built from the source tree.
        build_context: Directory holding the Dockerfile / compose file.
        compose_file: Compose file name inside the build context.
        volumes: Bind mounts used when no previous container exists.
        logs_dir: Where container logs are saved before redeploying.
        build_timeout_seconds: Timeout for image builds.
        health_url: Optional HTTP endpoint polled after start.
    """

    container_name: str = Field(default="selfupdate-app", description="Container name")
    image_name: str = Field(default="selfupdate-app:latest", description="Image tag")
    build_context: str = Field(default=".", description="Build context directory")
    compose_file: str = Field(
        default="docker-compose.yml",
        description="Compose file name inside the build context",
    )
    volumes: list[str] = Field(
        default_factory=list,
        description="Volume specs (host:container) for a fresh container",
    )
    logs_dir: str = Field(
        default="backups/docker",
        description="Directory receiving container logs before redeploy",
    )
    build_timeout_seconds: float = Field(
        default=900.0,
        description="Timeout in seconds for image builds",
        gt=0,
    )
    health_url: str | None = Field(
        default=None,
        description="HTTP URL that must answer 2xx after the container starts",
    )
    health_timeout_seconds: float = Field(
        default=30.0,
        description="How long to poll the health URL",
        gt=0,
    )


class SnapshotConfig(BaseModel):
    """Filesystem snapshot participant configuration.

    Attributes:
        source_dir: Directory tree to snapshot.
        backup_dir: Directory holding the backup_<ts> copies.
        space_factor: Free space required, as a multiple of the tree size.
        exclude_dirs: Directory names skipped while copying.
    """

    source_dir: str = Field(default=".", description="Directory to snapshot")
    backup_dir: str = Field(default="backups", description="Snapshot destination")
    space_factor: float = Field(
        default=2.0,
        description="Required free space as a multiple of the tree size",
        gt=0,
    )
    exclude_dirs: list[str] = Field(
        default_factory=lambda: [
            "node_modules",
            ".git",
            "logs",
            "backups",
            "__pycache__",
            ".venv",
        ],
        description="Directory names excluded from snapshots",
    )


# =============================================================================
# Collaborator Configuration
# =============================================================================


class StoreConfig(BaseModel):
    """Persistent store (SQLite) configuration.

    Attributes:
        enabled: Whether the store is checked and backed up.
        db_path: Path to the SQLite database.
        backup_dir: Directory receiving database backups.
    """

    enabled: bool = Field(default=False, description="Enable store checks")
    db_path: str = Field(default="data/app.db", description="SQLite database path")
    backup_dir: str = Field(
        default="backups/db", description="Directory for database backups"
    )


class MonitorConfig(BaseModel):
    """Resource monitor configuration.

    Attributes:
        enabled: Whether resources are checked and sampled.
        min_free_memory_mb: Minimum available memory before updating.
        min_free_disk_mb: Minimum free disk space before updating.
        max_cpu_percent: Maximum CPU usage before updating.
        sampling_interval_seconds: Sampling interval during a run.
    """

    enabled: bool = Field(default=True, description="Enable resource monitoring")
    min_free_memory_mb: int = Field(
        default=100, description="Minimum available memory in MB", ge=0
    )
    min_free_disk_mb: int = Field(
        default=500, description="Minimum free disk space in MB", ge=0
    )
    max_cpu_percent: float = Field(
        default=95.0, description="Maximum CPU usage in percent", ge=0, le=100
    )
    disk_path: str = Field(default=".", description="Path whose disk is checked")
    sampling_interval_seconds: float = Field(
        default=1.0, description="Sampling interval during a run", gt=0
    )


class RegressionConfig(BaseModel):
    """Regression test commands run around an update.

    Attributes:
        pre_update: Commands run before anything is mutated.
        post_update: Commands run after every participant applied.
        post_rollback: Commands run after a rollback.
        timeout_seconds: Timeout for each command.
    """

    pre_update: list[str] = Field(default_factory=list, description="Pre-update commands")
    post_update: list[str] = Field(
        default_factory=list, description="Post-update commands"
    )
    post_rollback: list[str] = Field(
        default_factory=list, description="Post-rollback commands"
    )
    cwd: str | None = Field(default=None, description="Working directory for commands")
    timeout_seconds: float = Field(
        default=600.0, description="Timeout in seconds per command", gt=0
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Built from multiple layers following the precedence rules:
    1. Built-in defaults (defined in this model)
    2. YAML config file
    3. Environment variables (SELFUPDATE_* prefix)
    4. Command-line overrides
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )
    process: ProcessConfig = Field(
        default_factory=ProcessConfig, description="Process execution settings"
    )
    orchestrator: OrchestratorConfig = Field(
        default_factory=OrchestratorConfig, description="Pipeline configuration"
    )
    git: GitConfig = Field(default_factory=GitConfig, description="Source sync")
    docker: DockerConfig = Field(
        default_factory=DockerConfig, description="Container redeploy"
    )
    snapshot: SnapshotConfig = Field(
        default_factory=SnapshotConfig, description="Filesystem snapshot"
    )
    store: StoreConfig = Field(default_factory=StoreConfig, description="SQLite store")
    monitor: MonitorConfig = Field(
        default_factory=MonitorConfig, description="Resource monitor"
    )
    tests: RegressionConfig = Field(
        default_factory=RegressionConfig, description="Regression test commands"
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    # Handle boolean values
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    # Handle comma-separated lists
    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = "SELFUPDATE_") -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Environment variables are parsed with the following rules:
    - Prefix: SELFUPDATE_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: SELFUPDATE_GIT__BRANCH=release

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix) :].lower()
        parts = config_key.split("__")

        current = result
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "SELFUPDATE_",
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Configuration is loaded from multiple sources in order:
    1. Built-in defaults (from AppConfig model)
    2. YAML config file (if specified or default exists)
    3. Environment variables (SELFUPDATE_* prefix)
    4. Overrides, usually built from command-line arguments

    Later sources override earlier ones.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Nested dictionary applied last.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        pydantic.ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"git": {"branch": "release"}})
        >>> config.git.branch
        'release'
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
