"""Models for the persisted deployment state file."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from dockpilot.models.deployment import Deployment
from dockpilot.models.session import Session


class DeploymentState(BaseModel):
    """Deployments and sessions tracked in a local state file."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0", description="State file schema version")
    deployments: dict[str, Deployment] = Field(
        default_factory=dict, description="Deployment records keyed by id"
    )
    sessions: dict[str, Session] = Field(
        default_factory=dict, description="Session records keyed by id"
    )
