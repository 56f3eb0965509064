"""Environment variable helpers for configuration files."""

import os
import re
from pathlib import Path

from dotenv import load_dotenv

from dockpilot.lib.errors import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def load_env_file(path: str | Path | None = None) -> bool:
    """Load a .env file into the process environment.

    Existing variables are never overridden.

    Args:
        path: Explicit .env path. Defaults to ``.env`` in the working directory.

    Returns:
        True if a file was found and loaded.
    """
    env_path = Path(path) if path is not None else Path.cwd() / ".env"
    if not env_path.is_file():
        return False
    return load_dotenv(env_path, override=False)


def get_env_var(name: str, default: str | None = None) -> str | None:
    """Return an environment variable or a default."""
    return os.environ.get(name, default)


def substitute_env_vars(text: str, env: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` references with environment values.

    Args:
        text: Raw text, usually a YAML document.
        env: Variables to use instead of ``os.environ``.

    Returns:
        Text with every reference substituted.

    Raises:
        ConfigError: If a referenced variable is not set.
    """
    variables = os.environ if env is None else env

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            raise ConfigError(name, f"Environment variable '{name}' is not set")
        return variables[name]

    return _ENV_PATTERN.sub(_replace, text)
