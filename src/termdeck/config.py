"""
termdeck Configuration Management

Provides configuration loading with multi-layer support:
1. Hardcoded defaults
2. User config file (~/.termdeck/config.yaml or $TERMDECK_CONFIG)
3. Workspace overrides (.termdeck/config.yaml)
4. Environment variables (TERMDECK_* prefix)

Every section is an explicit dataclass. Unknown keys are rejected instead of
silently ignored, and numeric settings are range checked after merging.
"""

from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import yaml

from termdeck.exceptions import TermdeckError


# =============================================================================
# Configuration Schema Data Classes
# =============================================================================


RENDER_MODES = {"static", "live", "interactive"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class DashboardConfig:
    """Dashboard settings"""
    default_preset: str = "development"
    render_mode: str = "interactive"
    refresh_interval_ms: int = 5000


@dataclass
class UpdateConfig:
    """Pane update queue settings"""
    debounce_ms: int = 100
    max_concurrent_updates: int = 3


@dataclass
class WatcherConfig:
    """Change watcher settings"""
    health_check_interval_ms: int = 30000
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    max_error_history: int = 50
    # Empty values mean "use the built-in watch table"
    required_dirs: list[str] = field(default_factory=list)
    watch_table: dict[str, list[str]] = field(default_factory=dict)
    priority_patterns: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class PerformanceConfig:
    """Performance monitor settings"""
    alert_threshold: float = 0.8
    max_samples: int = 100
    sample_interval_ms: int = 1000
    health_check_interval_ms: int = 5000
    enable_memory_tracking: bool = True


@dataclass
class ErrorHandlingConfig:
    """Error handler settings"""
    max_retries: int = 3
    retry_delay_ms: int = 1000
    max_history: int = 100
    enable_recovery: bool = True


@dataclass
class TermdeckConfig:
    """Main termdeck configuration"""
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    updates: UpdateConfig = field(default_factory=UpdateConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    errors: ErrorHandlingConfig = field(default_factory=ErrorHandlingConfig)

    debug_logging: bool = False
    log_level: str = "INFO"

    _workspace_path: Path | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("_workspace_path", None)
        return data


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(TermdeckError):
    """Base configuration error"""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error with detailed context"""

    def __init__(self, message: str, path: str = "", value: Any = None):
        self.message = message
        self.path = path
        self.value = value
        full_msg = "Validation error"
        if path:
            full_msg += f" at '{path}'"
        full_msg += f": {message}"
        if value is not None:
            full_msg += f" (got: {repr(value)})"
        super().__init__(full_msg)


class ConfigNotFoundError(ConfigError):
    """Configuration file not found (non-fatal, will use defaults)"""
    pass


# =============================================================================
# Configuration Utilities
# =============================================================================


def expand_env_vars(value: str, env: dict[str, str] | None = None) -> str:
    """
    Expand environment variables in a string.

    Supports ${VAR} and $VAR syntax. Non-existent variables are left unexpanded.

    Examples:
        >>> expand_env_vars("$FOO/bar", {"FOO": "baz"})
        'baz/bar'
    """
    if env is None:
        env = os.environ

    pattern = r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)'

    def replacer(match: re.Match) -> str:
        var_name = match.group(1) or match.group(2)
        return env.get(var_name, match.group(0))

    return re.sub(pattern, replacer, value)


def expand_path(path: str | Path) -> Path:
    """Expand a path string with ~ and environment variables."""
    return Path(expand_env_vars(str(path))).expanduser()


def validate_numeric_range(
    value: Any,
    min_val: int | float | None = None,
    max_val: int | float | None = None,
    path: str = "",
) -> None:
    """
    Validate that a numeric value is within range.

    Args:
        value: Value to validate
        min_val: Minimum allowed value (inclusive)
        max_val: Maximum allowed value (inclusive)
        path: Configuration path for error messages

    Raises:
        ConfigValidationError: If validation fails
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError(f"Expected numeric value, got {type(value).__name__}", path, value)

    if min_val is not None and value < min_val:
        raise ConfigValidationError(f"Value must be >= {min_val}", path, value)

    if max_val is not None and value > max_val:
        raise ConfigValidationError(f"Value must be <= {max_val}", path, value)


def validate_enum(value: Any, allowed: set[str] | list[str], path: str = "") -> None:
    """
    Validate that a value is in the allowed set.

    Raises:
        ConfigValidationError: If validation fails
    """
    if value not in allowed:
        allowed_str = ", ".join(repr(v) for v in sorted(allowed))
        raise ConfigValidationError(f"Value must be one of: {allowed_str}", path, value)


def merge_config(target: Any, data: dict[str, Any], prefix: str = "") -> None:
    """
    Merge a mapping into a configuration dataclass in place.

    Nested dataclass fields are merged recursively. Keys that do not name a
    field raise instead of being dropped.

    Args:
        target: Dataclass instance to update
        data: Mapping of overrides
        prefix: Current config path (for error messages)

    Raises:
        ConfigValidationError: If a key is unknown or a section is not a mapping
    """
    known = {f.name: f for f in fields(target) if not f.name.startswith("_")}

    for key, value in data.items():
        current_path = f"{prefix}.{key}" if prefix else key

        if key not in known:
            raise ConfigValidationError("Unknown configuration key", current_path)

        if value is None:
            continue

        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ConfigValidationError("Expected a mapping", current_path, value)
            merge_config(current, value, current_path)
        elif isinstance(current, dict):
            if not isinstance(value, dict):
                raise ConfigValidationError("Expected a mapping", current_path, value)
            setattr(target, key, {str(k): list(v) if isinstance(v, (list, tuple)) else v for k, v in value.items()})
        elif isinstance(current, list):
            if not isinstance(value, (list, tuple)):
                raise ConfigValidationError("Expected a list", current_path, value)
            setattr(target, key, list(value))
        else:
            setattr(target, key, value)


def validate_config(config: TermdeckConfig) -> None:
    """
    Validate the complete configuration.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    # Deferred import keeps presets free of config dependencies
    from termdeck.presets import BUILTIN_PRESETS

    validate_enum(config.dashboard.default_preset, set(BUILTIN_PRESETS), "dashboard.default_preset")
    validate_enum(config.dashboard.render_mode, RENDER_MODES, "dashboard.render_mode")
    validate_numeric_range(
        config.dashboard.refresh_interval_ms,
        min_val=1000,
        max_val=60000,
        path="dashboard.refresh_interval_ms",
    )

    validate_numeric_range(config.updates.debounce_ms, min_val=0, max_val=10000, path="updates.debounce_ms")
    validate_numeric_range(
        config.updates.max_concurrent_updates,
        min_val=1,
        max_val=32,
        path="updates.max_concurrent_updates",
    )

    validate_numeric_range(
        config.watcher.health_check_interval_ms,
        min_val=1000,
        path="watcher.health_check_interval_ms",
    )
    validate_numeric_range(config.watcher.retry_attempts, min_val=0, max_val=10, path="watcher.retry_attempts")
    validate_numeric_range(config.watcher.retry_delay_ms, min_val=0, path="watcher.retry_delay_ms")
    validate_numeric_range(config.watcher.max_error_history, min_val=1, path="watcher.max_error_history")
    for tier in config.watcher.priority_patterns:
        validate_enum(tier, {"high", "medium", "low"}, f"watcher.priority_patterns.{tier}")

    validate_numeric_range(
        config.performance.alert_threshold,
        min_val=0.1,
        max_val=1.0,
        path="performance.alert_threshold",
    )
    validate_numeric_range(config.performance.max_samples, min_val=1, path="performance.max_samples")
    validate_numeric_range(config.performance.sample_interval_ms, min_val=100, path="performance.sample_interval_ms")
    validate_numeric_range(
        config.performance.health_check_interval_ms,
        min_val=100,
        path="performance.health_check_interval_ms",
    )

    validate_numeric_range(config.errors.max_retries, min_val=0, max_val=10, path="errors.max_retries")
    validate_numeric_range(config.errors.retry_delay_ms, min_val=0, path="errors.retry_delay_ms")
    validate_numeric_range(config.errors.max_history, min_val=1, path="errors.max_history")

    validate_enum(config.log_level, LOG_LEVELS, "log_level")


# =============================================================================
# Configuration Loader
# =============================================================================


class ConfigLoader:
    """
    Loads and validates termdeck configuration from multiple sources.

    Loading order (later sources override earlier ones):
    1. Hardcoded defaults
    2. User config file (~/.termdeck/config.yaml or $TERMDECK_CONFIG)
    3. Workspace override (.termdeck/config.yaml in workspace)
    4. Environment variables (TERMDECK_* prefix)
    """

    DEFAULT_USER_CONFIG_PATH = "~/.termdeck/config.yaml"
    WORKSPACE_CONFIG_FILE = ".termdeck/config.yaml"

    ENV_VAR_MAP: dict[str, str] = {
        "TERMDECK_DEBUG": "debug_logging",
        "TERMDECK_LOG_LEVEL": "log_level",
        "TERMDECK_PRESET": "dashboard.default_preset",
        "TERMDECK_RENDER_MODE": "dashboard.render_mode",
        "TERMDECK_DEBOUNCE_MS": "updates.debounce_ms",
    }

    def __init__(
        self,
        workspace_path: Path | str | None = None,
        user_config_path: Path | str | None = None,
    ):
        self.workspace_path = expand_path(workspace_path) if workspace_path else None
        self.user_config_path = expand_path(user_config_path) if user_config_path else None

    def load(self) -> TermdeckConfig:
        """
        Load configuration from all sources.

        Returns:
            Fully loaded and validated TermdeckConfig

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        config = TermdeckConfig()

        user_config_path = self.user_config_path or self._get_user_config_path()
        user_data = self._load_yaml_file(user_config_path, required=self.user_config_path is not None)
        if user_data:
            merge_config(config, user_data)

        if self.workspace_path:
            workspace_data = self._load_yaml_file(
                self.workspace_path / self.WORKSPACE_CONFIG_FILE, required=False
            )
            if workspace_data:
                merge_config(config, workspace_data)
                config._workspace_path = self.workspace_path

        self._apply_env_vars(config)
        validate_config(config)

        return config

    def _get_user_config_path(self) -> Path:
        """Get the user config path, checking TERMDECK_CONFIG env var."""
        env_path = os.environ.get("TERMDECK_CONFIG")
        if env_path:
            return expand_path(env_path)
        return expand_path(self.DEFAULT_USER_CONFIG_PATH)

    def _load_yaml_file(self, path: Path, required: bool = True) -> dict[str, Any] | None:
        """
        Load a YAML configuration file.

        Raises:
            ConfigNotFoundError: If required and the file does not exist
            ConfigError: If file is invalid YAML
        """
        if not path.exists():
            if required:
                raise ConfigNotFoundError(f"Configuration file not found: {path}")
            return None

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Top level of {path} must be a mapping")
        return data

    def _apply_env_vars(self, config: TermdeckConfig) -> None:
        """Apply environment variable overrides to configuration."""
        for env_var, config_path in self.ENV_VAR_MAP.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            *parents, final_attr = config_path.split(".")
            obj = config
            for part in parents:
                obj = getattr(obj, part)

            current_value = getattr(obj, final_attr)
            if isinstance(current_value, bool):
                converted: Any = value.lower() in ("1", "true", "yes", "on")
            elif isinstance(current_value, int):
                try:
                    converted = int(value)
                except ValueError as e:
                    raise ConfigValidationError("Expected an integer", env_var, value) from e
            else:
                converted = value

            setattr(obj, final_attr, converted)


def get_config_value(path: str, config: TermdeckConfig) -> Any:
    """
    Get a configuration value by dot-separated path.

    Raises:
        ConfigError: If path is invalid

    Examples:
        >>> get_config_value("updates.debounce_ms", TermdeckConfig())
        100
    """
    value: Any = config
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif is_dataclass(value) and not part.startswith("_") and hasattr(value, part):
            value = getattr(value, part)
        else:
            raise ConfigError(f"Invalid configuration path: {path}")
    return value


# =============================================================================
# Initialize Default Configuration
# =============================================================================


def init_default_config(output_path: Path | str | None = None, force: bool = False) -> Path:
    """
    Create a default configuration file.

    Args:
        output_path: Optional output path (defaults to ~/.termdeck/config.yaml)
        force: Overwrite an existing file

    Returns:
        Path where configuration was written

    Raises:
        ConfigError: If the file exists and force is not set
    """
    output_path = expand_path(output_path or ConfigLoader.DEFAULT_USER_CONFIG_PATH)

    if output_path.exists() and not force:
        raise ConfigError(f"Configuration file already exists: {output_path}")

    output_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = TermdeckConfig().to_dict()
    # Leave the watch table to the built-in defaults
    for key in ("required_dirs", "watch_table", "priority_patterns"):
        default_config["watcher"].pop(key)

    with open(output_path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)

    return output_path
