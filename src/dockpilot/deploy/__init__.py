"""DockPilot deployment engine.

This package provides the build/run side of DockPilot: the artifact store,
platform executors, build output classification and deployment state.
"""

from dockpilot.deploy.artifacts import (
    ArtifactStore,
    InMemoryArtifactStore,
    LocalArtifactStore,
)
from dockpilot.deploy.error_parser import analyze_error, parse_error
from dockpilot.deploy.state import DeploymentStateStore

__all__ = [
    "ArtifactStore",
    "DeploymentStateStore",
    "InMemoryArtifactStore",
    "LocalArtifactStore",
    "analyze_error",
    "parse_error",
]
