"""Logging configuration for DockPilot.

All modules obtain their logger through ``get_logger`` so that log records
share the ``dockpilot`` namespace and a single handler configuration.
"""

from __future__ import annotations

import logging
import sys

ROOT_LOGGER_NAME = "dockpilot"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty at INFO
_NOISY_LOGGERS = ("docker", "urllib3", "httpx", "httpcore", "uvicorn.access")


def get_logger(name: str) -> logging.Logger:
    """Return a logger inside the dockpilot namespace.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        Logger instance.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure the dockpilot logger hierarchy.

    Args:
        verbose: Log at DEBUG level.
        quiet: Only log warnings and errors. Ignored when verbose is set.
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)

    # Re-running setup (e.g. several CLI invocations in one test) must not
    # stack handlers
    for handler in list(root.handlers):
        if getattr(handler, "_dockpilot_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler._dockpilot_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.propagate = False

    third_party_level = logging.DEBUG if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)
