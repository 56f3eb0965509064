"""CLI commands for running DockPilot deployments.

Implements the 'dockpilot deploy' command group: run a config set through
the build/deploy/remediate loop, inspect deployment records and cancel
pending deployments.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import Any

import click

from dockpilot.cli.runtime import (
    build_orchestrator,
    handle_deployment_errors,
    load_cli_config,
)
from dockpilot.lib.errors import InvalidTransitionError
from dockpilot.lib.logging_config import get_logger, setup_logging
from dockpilot.models.deployment import (
    Deployment,
    DeploymentPlatform,
    DeploymentStatus,
)
from dockpilot.models.events import EventType, StreamEvent
from dockpilot.orchestrator import DeploymentOrchestrator

logger = get_logger(__name__)

_STATUS_COLORS = {
    DeploymentStatus.RUNNING: "green",
    DeploymentStatus.DEGRADED: "yellow",
    DeploymentStatus.FAILED: "red",
    DeploymentStatus.CANCELLED: "yellow",
}


@click.group(name="deploy", invoke_without_command=True)
@click.pass_context
def deploy(ctx: click.Context) -> None:
    """Run and inspect deployments.

    Subcommands:

        run     Deploy a config set, remediating failed builds
        status  Show one deployment or list all of them
        cancel  Cancel a pending deployment

    Example:

        dockpilot deploy run 01J9Z8Q4K6M3

        dockpilot deploy status
    """
    ctx.ensure_object(dict)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@deploy.command()
@click.argument("config_set_id")
@click.option(
    "--platform",
    type=click.Choice([p.value for p in DeploymentPlatform]),
    default=None,
    help="Target platform (default: from configuration)",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(1, 5),
    default=None,
    help="Build attempts before giving up (1-5)",
)
@click.option(
    "--instructions",
    type=str,
    default=None,
    help="Hint passed to the remediation advisor",
)
@click.option("--name", type=str, default=None, help="Deployment name")
@click.option(
    "--environment",
    type=str,
    default="development",
    help="Environment label (default: development)",
)
@click.option("--notes", type=str, default=None, help="Free-form notes")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with orchestrator settings",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose debug logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress progress output")
def run(
    config_set_id: str,
    platform: str | None,
    max_attempts: int | None,
    instructions: str | None,
    name: str | None,
    environment: str,
    notes: str | None,
    config_path: str | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Deploy a config set and wait until it settles.

    CONFIG_SET_ID identifies a registered config set. Failed builds are
    handed to the remediation advisor and rebuilt until they pass or the
    attempt budget is spent. Press Ctrl+C to cancel.
    """
    setup_logging(verbose=verbose, quiet=quiet)
    logger.info(
        f"Deploy run invoked: config_set={config_set_id}, platform={platform}, "
        f"max_attempts={max_attempts}"
    )

    with handle_deployment_errors():
        config = load_cli_config(config_path)
        orchestrator = build_orchestrator(config)
        deployment = asyncio.run(
            _run_deployment(
                orchestrator,
                config_set_id,
                {
                    "platform": DeploymentPlatform(platform) if platform else None,
                    "max_attempts": max_attempts,
                    "custom_instructions": instructions,
                    "name": name,
                    "environment": environment,
                    "notes": notes,
                },
                quiet=quiet,
            )
        )

    _print_outcome(deployment)
    if deployment.status == DeploymentStatus.CANCELLED:
        sys.exit(130)
    if deployment.status != DeploymentStatus.RUNNING:
        sys.exit(3)


async def _run_deployment(
    orchestrator: DeploymentOrchestrator,
    config_set_id: str,
    options: dict[str, Any],
    *,
    quiet: bool,
) -> Deployment:
    """Create, start and follow a deployment until it settles."""
    deployment = await orchestrator.create_deployment(config_set_id, **options)
    if not quiet:
        click.echo(f"Deployment {deployment.id} created ({deployment.name})")

    loop = asyncio.get_running_loop()

    async def _cancel() -> None:
        try:
            await orchestrator.cancel(deployment.id)
        except InvalidTransitionError as e:
            logger.debug(f"Cancel ignored: {e}")

    def _on_interrupt() -> None:
        click.secho("Cancelling deployment...", fg="yellow", err=True)
        loop.create_task(_cancel())

    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    try:
        subscription = orchestrator.subscribe(deployment.id)
        orchestrator.start(deployment.id)
        async with subscription:
            async for event in subscription:
                if not quiet:
                    _print_event(event)
        return await orchestrator.wait(deployment.id)
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)


def _print_event(event: StreamEvent) -> None:
    data = event.data
    if event.type == EventType.ERROR:
        click.secho(f"  ! {data.get('error')}", fg="yellow")
        return
    if event.type != EventType.PROGRESS:
        return

    if "attempt_number" in data:
        click.echo(f"  Attempt {data['attempt_number']}")
    if "status" in data:
        progress = data.get("progress")
        suffix = f" ({progress}%)" if progress is not None else ""
        click.echo(f"  Status: {data['status']}{suffix}")
    if "message" in data:
        click.echo(f"  {data['message']}")
    if "session_status" in data:
        click.echo(f"  Remediation session {data['session_status']}")
    if data.get("file_changes"):
        change = data["file_changes"][-1]
        click.echo(f"  Edited {change['file']}: {change['reason']}")


def _print_outcome(deployment: Deployment) -> None:
    click.echo()
    if deployment.status == DeploymentStatus.RUNNING:
        click.secho("Deployment Successful!", fg="green", bold=True)
    else:
        click.secho(
            f"Deployment {deployment.status.value}",
            fg=_STATUS_COLORS.get(deployment.status, "red"),
            bold=True,
        )
    _print_details(deployment)


def _print_details(deployment: Deployment) -> None:
    click.echo(f"  ID:        {deployment.id}")
    click.echo(f"  Name:      {deployment.name}")
    click.echo(f"  Platform:  {deployment.platform.value}")
    click.echo(f"  Status:    {deployment.status.value}")
    click.echo(f"  Attempts:  {deployment.attempt_number}/{deployment.max_attempts}")
    if deployment.deploy_url:
        click.echo(f"  URL:       {deployment.deploy_url}")
    if deployment.container_id:
        click.echo(f"  Container: {deployment.container_id[:12]}")
    for port in deployment.ports:
        click.echo(f"  Port:      {port.host} -> {port.container}/{port.protocol}")
    if deployment.duration is not None:
        click.echo(f"  Duration:  {deployment.duration:.1f}s")
    if deployment.error:
        click.echo(f"  Error:     {deployment.error} ({deployment.error_code})")


@deploy.command()
@click.argument("deployment_id", required=False)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with orchestrator settings",
)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON records")
def status(deployment_id: str | None, config_path: str | None, as_json: bool) -> None:
    """Show a deployment, or list all deployments when no ID is given."""
    with handle_deployment_errors():
        orchestrator = build_orchestrator(load_cli_config(config_path))

        if deployment_id is None:
            deployments = orchestrator.list_deployments()
            if as_json:
                click.echo(
                    "[" + ",".join(d.model_dump_json() for d in deployments) + "]"
                )
                return
            if not deployments:
                click.echo("No deployments found.")
                return
            for d in deployments:
                click.echo(
                    f"{d.id}  {d.status.value:<10}  "
                    f"{d.attempt_number}/{d.max_attempts}  {d.name}"
                )
            return

        deployment = orchestrator.get_deployment(deployment_id)
        sessions = orchestrator.list_sessions(deployment_id)
        if as_json:
            click.echo(deployment.model_dump_json(indent=2))
            return

        _print_details(deployment)
        if sessions:
            click.echo()
            click.secho("Remediation sessions:", bold=True)
            for session in sessions:
                click.echo(
                    f"  #{session.attempt_number} {session.status.value:<10} "
                    f"{len(session.file_changes)} edit(s)  "
                    f"{session.error or session.summary or ''}"
                )


@deploy.command()
@click.argument("deployment_id")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with orchestrator settings",
)
def cancel(deployment_id: str, config_path: str | None) -> None:
    """Cancel a deployment that has not settled yet.

    Deployments running in another process (``dockpilot serve``) are
    cancelled through that server's HTTP API instead.
    """
    with handle_deployment_errors():
        orchestrator = build_orchestrator(load_cli_config(config_path))
        deployment = asyncio.run(orchestrator.cancel(deployment_id))
    click.secho(
        f"Deployment {deployment.id} is {deployment.status.value}", fg="yellow"
    )
