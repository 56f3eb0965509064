"""Request and response models for the DockPilot HTTP API."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from dockpilot.models.deployment import MAX_ATTEMPTS_LIMIT, DeploymentPlatform


class ServerState(str, Enum):
    """Lifecycle states of the HTTP server."""

    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class CreateDeploymentRequest(BaseModel):
    """Body of ``POST /deployments``."""

    model_config = ConfigDict(extra="forbid")

    config_set_id: str = Field(..., min_length=1, description="Config set to deploy")
    platform: DeploymentPlatform | None = Field(
        default=None, description="Target platform (server default when omitted)"
    )
    max_attempts: int | None = Field(
        default=None, ge=1, le=MAX_ATTEMPTS_LIMIT, description="Attempt budget"
    )
    custom_instructions: str | None = Field(
        default=None, description="Hint passed to the remediation advisor"
    )
    name: str | None = Field(default=None, description="Deployment name")
    environment: str = Field(default="development")
    notes: str | None = None


class ErrorResponse(BaseModel):
    """JSON body of every error response."""

    error: str
    code: str


class HealthResponse(BaseModel):
    """Body of ``GET /health``."""

    status: str
    active_deployments: int
    uptime_seconds: float
