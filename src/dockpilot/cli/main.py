"""DockPilot CLI entry point."""

from __future__ import annotations

import click

from dockpilot import __version__
from dockpilot.cli.commands.config_set import config_set
from dockpilot.cli.commands.deploy import deploy
from dockpilot.cli.commands.serve import serve


@click.group()
@click.version_option(__version__, prog_name="dockpilot")
def main() -> None:
    """DockPilot - deploy generated configurations and fix failing builds.

    Example:

        dockpilot config-set register ./generated --project-id shop

        dockpilot deploy run <config-set-id>

        dockpilot serve --port 8400
    """


main.add_command(config_set)
main.add_command(deploy)
main.add_command(serve)


if __name__ == "__main__":  # pragma: no cover
    main()
