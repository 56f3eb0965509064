"""Configuration loading for DockPilot.

Main components:
- load_config: Resolve OrchestratorConfig from YAML, environment and defaults
- Environment variable substitution (${VAR_NAME} pattern)
- Default configuration values
"""

from dockpilot.config.env_loader import get_env_var, load_env_file, substitute_env_vars
from dockpilot.config.loader import load_config

__all__ = [
    "load_config",
    "substitute_env_vars",
    "get_env_var",
    "load_env_file",
]
