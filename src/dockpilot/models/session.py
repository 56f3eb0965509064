"""Remediation session models.

A session's activity log and file changes are tuples. Appending builds a
new tuple and a new ``Session`` snapshot, so a snapshot handed to a
subscriber or persisted to disk never changes afterwards.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID

from dockpilot.lib.errors import InvalidTransitionError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Lifecycle states of a remediation session."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActivityType(str, Enum):
    """Kinds of entries in a session's audit trail."""

    TOOL_CALL = "tool_call"
    AI_RESPONSE = "ai_response"
    USER_ACTION = "user_action"
    ERROR = "error"


class ActivityEntry(BaseModel):
    """One entry in a session's append-only audit trail."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: str(ULID()))
    type: ActivityType
    action: str
    input: Any = None
    output: Any = None
    timestamp: datetime = Field(default_factory=_utcnow)


class FileChange(BaseModel):
    """A file edit applied (or proposed) during a session.

    Attributes:
        file: Artifact file name
        before: Content before the edit, None for a new file
        after: Content after the edit
        reason: Advisor-supplied rationale
        timestamp: When the change was recorded
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    file: str
    before: str | None
    after: str
    reason: str
    timestamp: datetime = Field(default_factory=_utcnow)


class Session(BaseModel):
    """One remediation attempt within a deployment."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: str(ULID()))
    deployment_id: str
    attempt_number: int = Field(..., ge=1)
    status: SessionStatus = SessionStatus.ACTIVE
    custom_instructions: str | None = None
    agent_state: str | None = Field(
        default=None, description="Opaque advisor token, never inspected"
    )
    file_changes: tuple[FileChange, ...] = ()
    activity_log: tuple[ActivityEntry, ...] = ()
    build_logs: str = ""
    summary: str | None = None
    error: str | None = None
    error_code: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """True while the session has not reached a final status."""
        return self.status == SessionStatus.ACTIVE

    def with_activity(self, entry: ActivityEntry) -> Session:
        """Return a copy with ``entry`` appended to the activity log."""
        return self.model_copy(update={"activity_log": (*self.activity_log, entry)})

    def with_file_change(self, change: FileChange) -> Session:
        """Return a copy with ``change`` appended to the file changes."""
        return self.model_copy(update={"file_changes": (*self.file_changes, change)})

    def finish(
        self,
        status: SessionStatus,
        *,
        error: str | None = None,
        error_code: str | None = None,
        summary: str | None = None,
    ) -> Session:
        """Return a copy in a final status.

        Raises:
            InvalidTransitionError: If the session already finished or the
                target is not a final status.
        """
        if not self.is_active or status == SessionStatus.ACTIVE:
            raise InvalidTransitionError("session", self.status.value, status.value)
        return self.model_copy(
            update={
                "status": status,
                "error": error,
                "error_code": error_code,
                "summary": summary,
                "completed_at": _utcnow(),
            }
        )


def replay_file_changes(
    snapshot: dict[str, str], changes: Iterable[FileChange]
) -> dict[str, str]:
    """Apply file changes in order to an artifact snapshot.

    Args:
        snapshot: File name to content mapping before the session.
        changes: File changes in recorded order.

    Returns:
        New mapping with every change applied.

    Raises:
        ValueError: If a change's ``before`` does not match the content it
            is applied to.
    """
    result = dict(snapshot)
    for change in changes:
        current = result.get(change.file)
        if current != change.before:
            raise ValueError(f"File change for '{change.file}' does not apply cleanly")
        result[change.file] = change.after
    return result
