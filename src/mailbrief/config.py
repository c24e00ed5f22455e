"""Configuration loader with hot-reload support.

Loads config.yaml, validates it against the Pydantic schema, and caches the
result. The scheduler calls reload_config_if_changed() before each cycle so
operators can change cadences, label names or limits without a restart.

Usage:
    from mailbrief.config import get_config, reload_config_if_changed

    config = get_config()

    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailbrief.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from mailbrief.core.errors import ConfigLoadError, ConfigValidationError
from mailbrief.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "MAILBRIEF_CONFIG_PATH"

_config_lock = threading.Lock()
_current_config: AppConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def _get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into one actionable line per field.

    Args:
        error: Pydantic ValidationError

    Returns:
        Formatted error message with specific field errors
    """
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"]) or "(root)"
        if err["type"] == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        elif err["type"] == "extra_forbidden":
            messages.append(f"  - Unknown field '{field_path}' (check for typos)")
        else:
            messages.append(f"  - Field '{field_path}': {err['msg']}")
    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML mapping.

    Raises:
        ConfigLoadError: If file not found or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it from config/config.yaml.example or set {CONFIG_PATH_ENV}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate config data against the Pydantic schema.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{_format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Upgrade mailbrief or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from YAML, bypassing the cache.

    Args:
        path: Optional path to config file. Defaults to MAILBRIEF_CONFIG_PATH
              or config/config.yaml.

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or _get_config_path()
    logger.debug("config_loading", path=str(config_path))

    config = _validate_config(_load_yaml(config_path), config_path)

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        ready_label=config.labels.ready_label,
        done_label=config.labels.done_label,
        max_envelopes=config.limits.max_envelopes_per_cycle,
    )
    return config


def get_config() -> AppConfig:
    """Get the current configuration singleton, loading it on first use.

    Thread-safe: the APScheduler jobs and the CLI may call this concurrently.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    global _current_config, _config_path, _config_mtime

    with _config_lock:
        if _current_config is None:
            _config_path = _get_config_path()
            _current_config = load_config(_config_path)
            _config_mtime = _config_path.stat().st_mtime
        return _current_config


def reload_config_if_changed() -> bool:
    """Reload the config singleton if the file changed on disk.

    Returns:
        True if config was reloaded, False if unchanged

    Behavior:
        - File unchanged: returns False
        - File changed and valid: updates singleton, returns True
        - File changed but invalid: keeps old config, logs WARNING, returns False
    """
    global _current_config, _config_mtime

    with _config_lock:
        if _config_path is None:
            return False

        try:
            current_mtime = _config_path.stat().st_mtime
        except OSError as e:
            logger.warning("config_mtime_check_failed", path=str(_config_path), error=str(e))
            return False

        if current_mtime <= _config_mtime:
            return False

        try:
            _current_config = load_config(_config_path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning(
                "config_reload_failed_keeping_previous",
                path=str(_config_path),
                error=str(e),
            )
            return False
        finally:
            # Don't retry a broken file on every check
            _config_mtime = current_mtime

        logger.info("config_reloaded", path=str(_config_path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without loading it into the singleton.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or _get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - classification schedule: {config.schedule.classification}\n"
        f"  - briefing schedule: {config.schedule.briefing}\n"
        f"  - labels: {config.labels.ready_label}, {config.labels.done_label}\n"
        f"  - briefing repo: {config.sink.repo or '(not set)'}",
    )


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config, _config_path, _config_mtime
    with _config_lock:
        _current_config = None
        _config_path = None
        _config_mtime = 0.0
