"""Models exchanged with build/run executors."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from dockpilot.models.deployment import PortMapping


class HealthStatus(str, Enum):
    """Result of a health probe on a running deployment."""

    OK = "ok"
    DEGRADED = "degraded"


class PreflightCheck(BaseModel):
    """Outcome of one pre-flight check."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    passed: bool
    message: str = ""


class BuildRequest(BaseModel):
    """Inputs for one build attempt.

    Attributes:
        deployment_id: Deployment being built
        name: Deployment name, used for labels
        attempt_number: Attempt this build belongs to
        project_path: Source tree copied into the build context
        files: Artifact file name to content at build time
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    deployment_id: str
    name: str
    attempt_number: int = Field(..., ge=1)
    project_path: str | None = None
    files: dict[str, str] = Field(default_factory=dict)


class BuildOutcome(BaseModel):
    """Result of a build step."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    ok: bool
    logs: str = ""
    image_id: str | None = None
    image_tag: str | None = None


class DeployOutcome(BaseModel):
    """Result of a deploy step.

    ``fault`` carries an error category when the failure is a host resource
    fault that no file edit can repair.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    ok: bool
    logs: str = ""
    container_id: str | None = None
    ports: tuple[PortMapping, ...] = ()
    url: str | None = None
    fault: str | None = None
