"""Advisor request and proposal models."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dockpilot.models.session import ActivityType


class ToolInvocation(BaseModel):
    """An advisor action reported while a proposal is being prepared."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: ActivityType = ActivityType.TOOL_CALL
    action: str
    input: Any = None
    output: Any = None


class FileEdit(BaseModel):
    """A proposed full-content replacement of one artifact file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    file: str = Field(..., description="Artifact file name, relative")
    content: str = Field(..., description="Complete new file content")
    reason: str = Field(default="", description="Why the edit is proposed")

    @field_validator("file")
    @classmethod
    def validate_file(cls, v: str) -> str:
        """Reject absolute paths and parent-directory escapes."""
        path = PurePosixPath(v)
        if not v or path.is_absolute() or ".." in path.parts:
            raise ValueError(f"Unsafe artifact file name: '{v}'")
        return v


class RemediationRequest(BaseModel):
    """Everything the advisor sees for one remediation session."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    deployment_id: str
    session_id: str
    attempt_number: int = Field(..., ge=1)
    max_attempts: int = Field(..., ge=1)
    logs: str
    error_analysis: dict[str, Any] = Field(default_factory=dict)
    files: dict[str, str] = Field(default_factory=dict)
    hint: str | None = None
    agent_state: str | None = None


class RemediationProposal(BaseModel):
    """Advisor response: edits to apply or an explicit refusal.

    Attributes:
        edits: File edits in application order
        rationale: Short explanation of the diagnosis
        unfixable: True when the advisor declines to propose a fix
        activity: Activity not already reported through the callback
        agent_state: Opaque token handed to the next session
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    edits: tuple[FileEdit, ...] = ()
    rationale: str = ""
    unfixable: bool = False
    activity: tuple[ToolInvocation, ...] = ()
    agent_state: str | None = None

    @model_validator(mode="after")
    def validate_refusal(self) -> RemediationProposal:
        """Validate that a refusal carries no edits."""
        if self.unfixable and self.edits:
            raise ValueError("An unfixable proposal must not contain edits")
        return self
