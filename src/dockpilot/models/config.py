"""Orchestrator configuration model."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from dockpilot.models.deployment import MAX_ATTEMPTS_LIMIT, DeploymentPlatform


class OrchestratorConfig(BaseModel):
    """Runtime settings for the deployment orchestrator.

    Attributes:
        max_attempts: Default attempt budget for new deployments
        executor_timeout: Ceiling in seconds for a single executor call
        advisor_timeout: Ceiling in seconds for a single advisor call
        artifact_write_timeout: Ceiling in seconds for one artifact write
        heartbeat_interval: Idle seconds before a subscription heartbeat
        backlog_size: Events kept per progress topic
        state_path: JSON file holding deployments and sessions
        artifacts_root: Directory of locally stored config sets
        build_root: Directory where build contexts are assembled
        default_platform: Platform used when a request names none
    """

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=MAX_ATTEMPTS_LIMIT)
    executor_timeout: float = Field(default=900.0, gt=0)
    advisor_timeout: float = Field(default=600.0, gt=0)
    artifact_write_timeout: float = Field(default=30.0, gt=0)
    heartbeat_interval: float = Field(default=15.0, gt=0)
    backlog_size: int = Field(default=50, ge=1)
    state_path: Path = Field(
        default_factory=lambda: Path.home() / ".dockpilot" / "deployments.json"
    )
    artifacts_root: Path = Field(
        default_factory=lambda: Path.home() / ".dockpilot" / "configs"
    )
    build_root: Path = Field(
        default_factory=lambda: Path.home() / ".dockpilot" / "deployments"
    )
    default_platform: DeploymentPlatform = Field(default=DeploymentPlatform.DOCKER)
