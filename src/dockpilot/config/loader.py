"""Configuration loader for the DockPilot orchestrator.

Settings are resolved from, in priority order:

1. An explicit YAML file (``${VAR}`` references substituted)
2. ``DOCKPILOT_*`` environment variables (after ``.env`` is loaded)
3. ``DEFAULT_ORCHESTRATOR_CONFIG``
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from dockpilot.config.defaults import DEFAULT_ORCHESTRATOR_CONFIG
from dockpilot.config.env_loader import load_env_file, substitute_env_vars
from dockpilot.config.validator import first_error_field, flatten_pydantic_errors
from dockpilot.lib.errors import ConfigError
from dockpilot.models.config import OrchestratorConfig

logger = logging.getLogger(__name__)

# Environment variable to field name mapping
ENV_VAR_MAP = {
    "max_attempts": "DOCKPILOT_MAX_ATTEMPTS",
    "executor_timeout": "DOCKPILOT_EXECUTOR_TIMEOUT",
    "advisor_timeout": "DOCKPILOT_ADVISOR_TIMEOUT",
    "artifact_write_timeout": "DOCKPILOT_ARTIFACT_WRITE_TIMEOUT",
    "heartbeat_interval": "DOCKPILOT_HEARTBEAT_INTERVAL",
    "backlog_size": "DOCKPILOT_BACKLOG_SIZE",
    "state_path": "DOCKPILOT_STATE_PATH",
    "artifacts_root": "DOCKPILOT_ARTIFACTS_ROOT",
    "build_root": "DOCKPILOT_BUILD_ROOT",
    "default_platform": "DOCKPILOT_DEFAULT_PLATFORM",
}

_INT_FIELDS = ("max_attempts", "backlog_size")
_FLOAT_FIELDS = (
    "executor_timeout",
    "advisor_timeout",
    "artifact_write_timeout",
    "heartbeat_interval",
)


def _parse_env_value(field_name: str, value: str) -> Any:
    """Parse environment variable value to appropriate type.

    Args:
        field_name: Name of the field (used to determine type)
        value: String value from environment variable

    Returns:
        Parsed value in correct type (int, float, or str)

    Raises:
        ValueError: If value cannot be parsed
    """
    if field_name in _INT_FIELDS:
        return int(value)
    elif field_name in _FLOAT_FIELDS:
        return float(value)
    else:
        return value


def _get_env_value(field_name: str, env_vars: Mapping[str, str]) -> Any | None:
    """Get environment variable value for a field.

    Args:
        field_name: Name of field to get
        env_vars: Environment variables mapping

    Returns:
        Parsed value or None if not set

    Raises:
        ConfigError: If the variable is set but cannot be parsed
    """
    env_var_name = ENV_VAR_MAP.get(field_name)
    if not env_var_name or env_var_name not in env_vars:
        return None

    try:
        return _parse_env_value(field_name, env_vars[env_var_name])
    except ValueError as e:
        raise ConfigError(
            field_name, f"Invalid value for {env_var_name}: {env_vars[env_var_name]!r}"
        ) from e


def _read_yaml_with_env_substitution(
    path: Path, env_vars: Mapping[str, str]
) -> dict[str, Any]:
    """Read a YAML file with ``${VAR}`` substitution.

    Raises:
        ConfigError: If the file cannot be read or parsed, or is not a mapping
    """
    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError("path", f"Cannot read config file {path}: {e}") from e

    substituted = substitute_env_vars(raw_text, dict(env_vars))
    try:
        content = yaml.safe_load(substituted)
    except yaml.YAMLError as e:
        raise ConfigError("yaml_parse", f"Invalid YAML in {path}: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError("yaml_parse", f"{path} must contain a mapping")
    # Settings may sit at the top level or under an ``orchestrator`` key
    section = content.get("orchestrator", content)
    if not isinstance(section, dict):
        raise ConfigError("orchestrator", "Section must be a mapping")
    return section


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> OrchestratorConfig:
    """Load the orchestrator configuration.

    Args:
        path: Optional YAML file overriding environment and defaults.
        env: Environment mapping. Defaults to ``os.environ`` after loading
            ``.env`` from the working directory.

    Returns:
        Validated OrchestratorConfig.

    Raises:
        ConfigError: If any source holds an invalid value.
    """
    if env is None:
        load_env_file()
        env = os.environ

    merged: dict[str, Any] = dict(DEFAULT_ORCHESTRATOR_CONFIG)

    for field_name in ENV_VAR_MAP:
        value = _get_env_value(field_name, env)
        if value is not None:
            merged[field_name] = value

    if path is not None:
        file_settings = _read_yaml_with_env_substitution(Path(path), env)
        logger.debug(f"Loaded {len(file_settings)} settings from {path}")
        merged.update(file_settings)

    try:
        config = OrchestratorConfig(**merged)
    except PydanticValidationError as e:
        raise ConfigError(
            first_error_field(e), "; ".join(flatten_pydantic_errors(e))
        ) from e

    for key in ("state_path", "artifacts_root", "build_root"):
        expanded = Path(getattr(config, key)).expanduser()
        config = config.model_copy(update={key: expanded})

    logger.debug(
        f"Orchestrator config: max_attempts={config.max_attempts}, "
        f"state_path={config.state_path}"
    )
    return config
