"""CLI command for serving the deployment API over HTTP.

Implements the 'dockpilot serve' command, which runs the orchestrator
behind a FastAPI application with Server-Sent Events progress streams.
"""

from __future__ import annotations

import asyncio
import sys

import click

from dockpilot.cli.runtime import build_orchestrator, load_cli_config
from dockpilot.lib.errors import ConfigError
from dockpilot.lib.logging_config import get_logger, setup_logging
from dockpilot.orchestrator import DeploymentOrchestrator

logger = get_logger(__name__)


@click.command()
@click.option(
    "--port",
    "-p",
    type=int,
    default=8400,
    help="Port to listen on (default: 8400)",
)
@click.option(
    "--host",
    "-h",
    type=str,
    default="127.0.0.1",
    help="Host to bind to (default: 127.0.0.1 for local-only access)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with orchestrator settings",
)
@click.option(
    "--debug/--no-debug",
    default=False,
    help="Enable debug logging",
)
@click.option(
    "--cors-origins",
    type=str,
    default="*",
    help="Comma-separated list of allowed CORS origins (default: *)",
)
def serve(
    port: int,
    host: str,
    config_path: str | None,
    debug: bool,
    cors_origins: str,
) -> None:
    """Start an HTTP server exposing the deployment API.

    Example:

        dockpilot serve

        dockpilot serve --port 9000 --config dockpilot.yaml

    Endpoints:

        POST /deployments                 Create and start a deployment
        GET  /deployments/{id}/events     Progress stream (SSE)
        POST /deployments/{id}/cancel     Cancel a deployment
    """
    setup_logging(verbose=debug, quiet=False)
    logger.info(f"Serve command invoked: host={host}, port={port}, debug={debug}")

    try:
        config = load_cli_config(config_path)
        orchestrator = build_orchestrator(config)
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
        asyncio.run(
            _run_server(
                orchestrator,
                host=host,
                port=port,
                cors_origins=origins,
                debug=debug,
            )
        )
    except ConfigError as e:
        logger.error(f"Configuration error: {e}", exc_info=True)
        click.secho("Error: Failed to load configuration", fg="red", err=True)
        click.echo(f"  {e}", err=True)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Server interrupted by user (Ctrl+C)")
        click.echo()
        click.secho("Server stopped.", fg="yellow")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)


async def _run_server(
    orchestrator: DeploymentOrchestrator,
    host: str,
    port: int,
    cors_origins: list[str],
    debug: bool,
) -> None:
    """Run uvicorn until it is stopped.

    The application lifespan recovers interrupted deployments on startup
    and cancels running ones on shutdown.
    """
    import uvicorn

    from dockpilot.serve.server import DeploymentServer

    server = DeploymentServer(
        orchestrator, host=host, port=port, cors_origins=cors_origins
    )
    app = server.create_app()

    _display_startup_info(host, port)

    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="debug" if debug else "info",
    )
    await uvicorn.Server(config).serve()


def _display_startup_info(host: str, port: int) -> None:
    click.echo()
    click.secho("=" * 60, fg="cyan")
    click.secho("  DockPilot Deployment Server", fg="cyan", bold=True)
    click.secho("=" * 60, fg="cyan")
    click.echo()
    click.echo(f"  URL:      http://{host}:{port}")
    click.echo()
    click.secho("  Endpoints:", bold=True)
    click.echo("    POST /deployments                 Create and start")
    click.echo("    GET  /deployments                 List deployments")
    click.echo("    GET  /deployments/{id}/events     Progress stream (SSE)")
    click.echo("    POST /deployments/{id}/cancel     Cancel")
    click.echo("    POST /deployments/{id}/health     Health probe")
    click.echo("    GET  /health                      Health check")
    click.echo()
    click.secho("  Press Ctrl+C to stop", fg="yellow")
    click.echo()
