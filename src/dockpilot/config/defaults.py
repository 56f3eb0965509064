"""Default configuration values for DockPilot."""

from pathlib import Path
from typing import Any

DOCKPILOT_HOME = Path.home() / ".dockpilot"

# Orchestrator defaults
DEFAULT_ORCHESTRATOR_CONFIG: dict[str, Any] = {
    "max_attempts": 3,
    "executor_timeout": 900,  # seconds
    "advisor_timeout": 600,  # seconds
    "artifact_write_timeout": 30,  # seconds
    "heartbeat_interval": 15,  # seconds
    "backlog_size": 50,
    "state_path": str(DOCKPILOT_HOME / "deployments.json"),
    "artifacts_root": str(DOCKPILOT_HOME / "configs"),
    "build_root": str(DOCKPILOT_HOME / "deployments"),
    "default_platform": "docker",
}

# Files the Docker executor needs before a build can start
DOCKER_REQUIRED_ARTIFACTS: tuple[str, ...] = ("Dockerfile",)

# Minimum free space in the build root, in bytes
MIN_FREE_DISK_BYTES = 1024 * 1024 * 1024

# Runtime log lines fetched after a deploy
RUNTIME_LOG_TAIL = 200
