"""Shared wiring for DockPilot CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Generator
from contextlib import contextmanager

import click

from dockpilot.config.loader import load_config
from dockpilot.deploy.artifacts import LocalArtifactStore
from dockpilot.deploy.state import DeploymentStateStore
from dockpilot.lib.errors import ConfigError, DeploymentError, DockPilotError
from dockpilot.lib.logging_config import get_logger
from dockpilot.models.config import OrchestratorConfig
from dockpilot.orchestrator import DeploymentOrchestrator

logger = get_logger(__name__)


@contextmanager
def handle_deployment_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in CLI commands.

    Exit codes:
        2: Configuration error
        3: Deployment/execution error
    """
    try:
        yield
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e}", err=True)
        sys.exit(2)
    except DeploymentError as e:
        logger.error(f"Deployment error: {e}")
        click.secho(f"Error: {e.operation} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(3)
    except DockPilotError as e:
        logger.error(f"{e.code}: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)


def load_cli_config(config_path: str | None) -> OrchestratorConfig:
    """Load settings from an optional YAML file, the environment and defaults."""
    return load_config(config_path)


def build_orchestrator(config: OrchestratorConfig) -> DeploymentOrchestrator:
    """Create an orchestrator over the on-disk artifact and state stores."""
    logger.debug(
        f"Using artifacts at {config.artifacts_root}, state at {config.state_path}"
    )
    return DeploymentOrchestrator(
        artifacts=LocalArtifactStore(config.artifacts_root),
        state=DeploymentStateStore(config.state_path),
        config=config,
    )
