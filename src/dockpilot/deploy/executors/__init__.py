"""Build/run executors for DockPilot deployments."""

from __future__ import annotations

from pathlib import Path

from dockpilot.deploy.executors.base import BaseExecutor
from dockpilot.lib.errors import DeploymentError
from dockpilot.models.deployment import DeploymentPlatform


def create_executor(platform: DeploymentPlatform, build_root: Path) -> BaseExecutor:
    """Create the executor for a deployment platform."""
    if platform == DeploymentPlatform.DOCKER:
        from dockpilot.deploy.executors.docker import DockerExecutor

        return DockerExecutor(build_root=build_root)

    raise DeploymentError(
        operation="preflight",
        message=(
            f"The {platform.value} platform is not implemented yet. "
            "Docker is the only supported platform for now."
        ),
    )


__all__ = ["BaseExecutor", "create_executor"]
