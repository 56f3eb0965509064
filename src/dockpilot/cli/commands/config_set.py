"""CLI commands for managing config sets.

A config set is a directory of generated deployment files (Dockerfile,
compose files, scripts). Registering it stores an initial revision of each
file so deployments can build from it and remediation can edit it.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from dockpilot.cli.runtime import handle_deployment_errors, load_cli_config
from dockpilot.deploy.artifacts import METADATA_DIR, LocalArtifactStore
from dockpilot.lib.errors import ConfigError
from dockpilot.lib.logging_config import get_logger
from dockpilot.models.artifacts import ConfigSet

logger = get_logger(__name__)


def collect_files(directory: Path) -> dict[str, str]:
    """Read every text file below a directory, keyed by relative POSIX path.

    Hidden files and directories are skipped.
    """
    files: dict[str, str] = {}
    for path in sorted(directory.rglob("*")):
        relative = path.relative_to(directory)
        if not path.is_file() or any(
            part.startswith(".") or part == METADATA_DIR for part in relative.parts
        ):
            continue
        try:
            files[relative.as_posix()] = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ConfigError(
                str(relative), "Config set files must be UTF-8 text"
            ) from e
    return files


@click.group(name="config-set", invoke_without_command=True)
@click.pass_context
def config_set(ctx: click.Context) -> None:
    """Register and list config sets.

    Example:

        dockpilot config-set register ./generated --project-id shop

        dockpilot config-set list
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@config_set.command()
@click.argument(
    "directory", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.option("--project-id", required=True, help="Project the files belong to")
@click.option("--name", default=None, help="Config set name (default: dir name)")
@click.option("--version", "version", type=click.IntRange(min=1), default=1)
@click.option(
    "--project-path",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Source tree copied into the build context",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with orchestrator settings",
)
def register(
    directory: Path,
    project_id: str,
    name: str | None,
    version: int,
    project_path: str | None,
    config_path: str | None,
) -> None:
    """Register the files in DIRECTORY as a new config set."""
    with handle_deployment_errors():
        config = load_cli_config(config_path)
        files = collect_files(directory)
        if not files:
            raise ConfigError("directory", f"No files found in {directory}")

        store = LocalArtifactStore(config.artifacts_root)
        config_set_record = ConfigSet(
            project_id=project_id,
            name=name or directory.resolve().name,
            version=version,
            project_path=str(Path(project_path).resolve()) if project_path else None,
        )
        asyncio.run(store.register(config_set_record, files))

    click.secho(f"Registered config set {config_set_record.id}", fg="green")
    for file_name in files:
        click.echo(f"  {file_name}")


@config_set.command(name="list")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with orchestrator settings",
)
def list_config_sets(config_path: str | None) -> None:
    """List registered config sets."""
    with handle_deployment_errors():
        config = load_cli_config(config_path)
        store = LocalArtifactStore(config.artifacts_root)
        config_sets = asyncio.run(store.list_config_sets())

    if not config_sets:
        click.echo("No config sets registered.")
        return
    for cs in config_sets:
        click.echo(f"{cs.id}  v{cs.version}  {cs.project_id}/{cs.name}")
