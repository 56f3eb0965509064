"""Pydantic models for deployment records and the deployment state machine.

A ``Deployment`` is an immutable snapshot. Every status change goes through
``Deployment.transition`` which checks the edge against
``ALLOWED_TRANSITIONS`` and returns a new snapshot.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from ulid import ULID

from dockpilot.lib.errors import InvalidTransitionError


class DeploymentPlatform(str, Enum):
    """Deployment targets. Only Docker is enabled today."""

    DOCKER = "docker"
    KUBERNETES = "kubernetes"
    VERCEL = "vercel"
    RAILWAY = "railway"
    NETLIFY = "netlify"


ENABLED_PLATFORMS: frozenset[DeploymentPlatform] = frozenset(
    {DeploymentPlatform.DOCKER}
)


class DeploymentStatus(str, Enum):
    """Lifecycle states of a deployment."""

    PENDING = "pending"
    PRE_FLIGHT = "pre_flight"
    BUILDING = "building"
    DEPLOYING = "deploying"
    RUNNING = "running"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[DeploymentStatus] = frozenset(
    {DeploymentStatus.RUNNING, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
)

# Statuses in which the attempt loop has finished. DEGRADED is only reachable
# from RUNNING, so it is settled as well.
SETTLED_STATUSES: frozenset[DeploymentStatus] = TERMINAL_STATUSES | {
    DeploymentStatus.DEGRADED
}

ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset(
        {
            DeploymentStatus.PRE_FLIGHT,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
        }
    ),
    DeploymentStatus.PRE_FLIGHT: frozenset(
        {
            DeploymentStatus.BUILDING,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
        }
    ),
    # BUILDING -> BUILDING is the retry edge after a remediation session
    DeploymentStatus.BUILDING: frozenset(
        {
            DeploymentStatus.DEPLOYING,
            DeploymentStatus.BUILDING,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
        }
    ),
    DeploymentStatus.DEPLOYING: frozenset(
        {
            DeploymentStatus.RUNNING,
            DeploymentStatus.BUILDING,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
        }
    ),
    # Health overlay only; neither direction consumes an attempt. This is the
    # only edge that re-enters running.
    DeploymentStatus.RUNNING: frozenset({DeploymentStatus.DEGRADED}),
    DeploymentStatus.DEGRADED: frozenset({DeploymentStatus.RUNNING}),
    DeploymentStatus.FAILED: frozenset(),
    DeploymentStatus.CANCELLED: frozenset(),
}

STATUS_PROGRESS: dict[DeploymentStatus, int] = {
    DeploymentStatus.PENDING: 0,
    DeploymentStatus.PRE_FLIGHT: 10,
    DeploymentStatus.BUILDING: 30,
    DeploymentStatus.DEPLOYING: 70,
    DeploymentStatus.RUNNING: 100,
    DeploymentStatus.DEGRADED: 100,
    DeploymentStatus.FAILED: 100,
    DeploymentStatus.CANCELLED: 100,
}

MAX_ATTEMPTS_LIMIT = 5

_COMPUTED_FIELDS = frozenset({"duration", "progress"})


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    """Return True if the state machine allows moving from current to target."""
    return target in ALLOWED_TRANSITIONS[current]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PortMapping(BaseModel):
    """Host to container port mapping of a running deployment."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: int = Field(..., ge=1, le=65535, description="Host port")
    container: int = Field(..., ge=1, le=65535, description="Container port")
    protocol: Literal["tcp", "udp"] = Field(default="tcp", description="Protocol")


class Deployment(BaseModel):
    """One attempted rollout of a config set.

    Attributes:
        id: Unique identifier in ULID format
        config_set_id: Config set being deployed
        project_id: Project the config set was generated for
        name: Human-readable deployment name
        project_path: Source tree used as build context
        platform: Deployment target
        status: Current lifecycle status
        attempt_number: Current build attempt, starting at 1
        max_attempts: Attempt budget
        container_id: Running container (set once running)
        image_id: Built image id (set once running)
        image_tag: Built image reference (set once running)
        ports: Published ports (set once running)
        deploy_url: URL of the running service (set once running)
        error: Human-readable terminal cause
        error_code: Taxonomy code of the terminal cause
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: str(ULID()))
    config_set_id: str = Field(..., description="Config set being deployed")
    project_id: str = Field(..., description="Owning project")
    name: str = Field(..., description="Human-readable deployment name")
    project_path: str | None = Field(
        default=None, description="Source tree used as build context"
    )
    platform: DeploymentPlatform = Field(default=DeploymentPlatform.DOCKER)
    environment: str = Field(default="development")
    notes: str | None = Field(default=None)
    custom_instructions: str | None = Field(
        default=None, description="Operator hint passed to the advisor"
    )

    status: DeploymentStatus = Field(default=DeploymentStatus.PENDING)
    attempt_number: int = Field(default=1, ge=1)
    max_attempts: int = Field(default=3, ge=1, le=MAX_ATTEMPTS_LIMIT)

    container_id: str | None = None
    image_id: str | None = None
    image_tag: str | None = None
    ports: tuple[PortMapping, ...] = ()
    deploy_url: str | None = None

    build_logs: str | None = None
    runtime_logs: str | None = None
    error: str | None = None
    error_code: str | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def drop_computed_fields(cls, data: Any) -> Any:
        """Accept serialized records, which carry the computed fields."""
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if k not in _COMPUTED_FIELDS}
        return data

    @model_validator(mode="after")
    def validate_attempt_budget(self) -> Deployment:
        """Validate that attempt_number never exceeds max_attempts."""
        if self.attempt_number > self.max_attempts:
            raise ValueError(
                f"attempt_number ({self.attempt_number}) must be <= "
                f"max_attempts ({self.max_attempts})"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration(self) -> float | None:
        """Seconds between start and completion, None until both are known."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def progress(self) -> int:
        """Coarse completion percentage derived from the status."""
        return STATUS_PROGRESS[self.status]

    @property
    def is_terminal(self) -> bool:
        """True once the deployment reached running, failed or cancelled."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_settled(self) -> bool:
        """True once the attempt loop is over (terminal or degraded)."""
        return self.status in SETTLED_STATUSES

    def transition(self, target: DeploymentStatus, **updates: Any) -> Deployment:
        """Return a copy moved to ``target`` with extra field updates.

        Args:
            target: Status to move to.
            **updates: Other fields to change in the same snapshot.

        Returns:
            New Deployment snapshot.

        Raises:
            InvalidTransitionError: If the edge is not allowed, or the update
                would decrease or overrun the attempt number.
        """
        if not can_transition(self.status, target):
            raise InvalidTransitionError("deployment", self.status.value, target.value)

        attempt = updates.get("attempt_number", self.attempt_number)
        if attempt < self.attempt_number or attempt > self.max_attempts:
            raise InvalidTransitionError(
                "deployment attempt", str(self.attempt_number), str(attempt)
            )
        if (
            self.status == target == DeploymentStatus.BUILDING
            and attempt == self.attempt_number
        ):
            raise InvalidTransitionError(
                "deployment attempt", str(self.attempt_number), str(attempt)
            )

        now = _utcnow()
        changes: dict[str, Any] = {"status": target, "updated_at": now, **updates}
        if target == DeploymentStatus.PRE_FLIGHT and self.started_at is None:
            changes.setdefault("started_at", now)
        if target in TERMINAL_STATUSES and self.completed_at is None:
            changes.setdefault("completed_at", now)
        return self.model_copy(update=changes)

    def with_updates(self, **updates: Any) -> Deployment:
        """Return a copy with non-status fields changed."""
        if "status" in updates:
            raise ValueError("Use transition() to change status")
        return self.model_copy(update={**updates, "updated_at": _utcnow()})
