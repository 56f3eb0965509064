"""Unit tests for deployment, session and remediation models."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from dockpilot.lib.errors import InvalidTransitionError
from dockpilot.models.deployment import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Deployment,
    DeploymentStatus,
    can_transition,
)
from dockpilot.models.events import EventType, StreamEvent
from dockpilot.models.remediation import FileEdit, RemediationProposal
from dockpilot.models.session import (
    ActivityEntry,
    ActivityType,
    FileChange,
    Session,
    SessionStatus,
    replay_file_changes,
)


def _deployment(**overrides: object) -> Deployment:
    fields: dict[str, object] = {
        "config_set_id": "cs-1",
        "project_id": "shop",
        "name": "shop-web-v1",
    }
    fields.update(overrides)
    return Deployment(**fields)  # type: ignore[arg-type]


def _building(max_attempts: int = 3) -> Deployment:
    return (
        _deployment(max_attempts=max_attempts)
        .transition(DeploymentStatus.PRE_FLIGHT)
        .transition(DeploymentStatus.BUILDING)
    )


class TestDeploymentDefaults:
    """Tests for Deployment construction."""

    def test_new_deployment_is_pending(self) -> None:
        """A new deployment starts pending at attempt 1."""
        deployment = _deployment()

        assert deployment.status == DeploymentStatus.PENDING
        assert deployment.attempt_number == 1
        assert deployment.max_attempts == 3
        assert deployment.progress == 0
        assert deployment.duration is None
        assert len(deployment.id) == 26

    def test_attempt_number_above_budget_rejected(self) -> None:
        """attempt_number may never exceed max_attempts."""
        with pytest.raises(ValidationError, match="must be <= max_attempts"):
            _deployment(attempt_number=4, max_attempts=3)

    def test_max_attempts_limit(self) -> None:
        """The attempt budget is capped at five."""
        with pytest.raises(ValidationError):
            _deployment(max_attempts=6)

    def test_deployment_is_immutable(self) -> None:
        """Snapshots are frozen."""
        deployment = _deployment()
        with pytest.raises(ValidationError):
            deployment.status = DeploymentStatus.RUNNING  # type: ignore[misc]


class TestDeploymentTransitions:
    """Tests for the deployment state machine."""

    def test_happy_path(self) -> None:
        """pending -> pre_flight -> building -> deploying -> running."""
        deployment = _building().transition(DeploymentStatus.DEPLOYING)
        running = deployment.transition(
            DeploymentStatus.RUNNING, container_id="abc", deploy_url="http://x"
        )

        assert running.status == DeploymentStatus.RUNNING
        assert running.container_id == "abc"
        assert running.progress == 100
        assert running.started_at is not None
        assert running.completed_at is not None
        assert running.duration is not None and running.duration >= 0
        assert deployment.status == DeploymentStatus.DEPLOYING

    def test_skipping_states_rejected(self) -> None:
        """pending cannot jump straight to running."""
        with pytest.raises(InvalidTransitionError, match="'pending' to 'running'"):
            _deployment().transition(DeploymentStatus.RUNNING)

    @pytest.mark.parametrize(
        "status", [DeploymentStatus.FAILED, DeploymentStatus.CANCELLED]
    )
    def test_final_states_have_no_exits(self, status: DeploymentStatus) -> None:
        """failed and cancelled never transition further."""
        assert ALLOWED_TRANSITIONS[status] == frozenset()
        settled = _deployment().transition(status)
        with pytest.raises(InvalidTransitionError):
            settled.transition(DeploymentStatus.PRE_FLIGHT)

    def test_health_overlay_edges(self) -> None:
        """running and degraded only move between each other."""
        assert can_transition(DeploymentStatus.RUNNING, DeploymentStatus.DEGRADED)
        assert can_transition(DeploymentStatus.DEGRADED, DeploymentStatus.RUNNING)
        assert not can_transition(DeploymentStatus.RUNNING, DeploymentStatus.FAILED)
        assert DeploymentStatus.DEGRADED not in TERMINAL_STATUSES

    def test_cancel_from_any_active_state(self) -> None:
        """Every non-terminal loop state can be cancelled or failed."""
        for status in (
            DeploymentStatus.PENDING,
            DeploymentStatus.PRE_FLIGHT,
            DeploymentStatus.BUILDING,
            DeploymentStatus.DEPLOYING,
        ):
            assert can_transition(status, DeploymentStatus.CANCELLED)
            assert can_transition(status, DeploymentStatus.FAILED)

    def test_retry_edge_requires_attempt_increment(self) -> None:
        """building -> building must consume an attempt."""
        building = _building()
        with pytest.raises(InvalidTransitionError):
            building.transition(DeploymentStatus.BUILDING)

        retried = building.transition(DeploymentStatus.BUILDING, attempt_number=2)
        assert retried.attempt_number == 2

    def test_attempt_never_decreases(self) -> None:
        """A transition may not lower the attempt number."""
        retried = _building().transition(DeploymentStatus.BUILDING, attempt_number=2)
        with pytest.raises(InvalidTransitionError):
            retried.transition(DeploymentStatus.DEPLOYING, attempt_number=1)

    def test_attempt_never_exceeds_budget(self) -> None:
        """A transition may not overrun max_attempts."""
        building = _building(max_attempts=1)
        with pytest.raises(InvalidTransitionError):
            building.transition(DeploymentStatus.BUILDING, attempt_number=2)

    def test_started_at_kept_across_transitions(self) -> None:
        """started_at is stamped once on pre_flight."""
        pre_flight = _deployment().transition(DeploymentStatus.PRE_FLIGHT)
        building = pre_flight.transition(DeploymentStatus.BUILDING)

        assert building.started_at == pre_flight.started_at

    def test_with_updates_refuses_status(self) -> None:
        """Status changes must go through transition()."""
        deployment = _deployment()
        with pytest.raises(ValueError, match="transition"):
            deployment.with_updates(status=DeploymentStatus.RUNNING)

        updated = deployment.with_updates(build_logs="step 1/5")
        assert updated.build_logs == "step 1/5"
        assert deployment.build_logs is None


class TestSessionModel:
    """Tests for Session snapshots and file change replay."""

    def test_appends_build_new_snapshots(self) -> None:
        """Appending activity leaves the earlier snapshot untouched."""
        session = Session(deployment_id="dep-1", attempt_number=1)
        entry = ActivityEntry(type=ActivityType.TOOL_CALL, action="read_file")

        updated = session.with_activity(entry)

        assert session.activity_log == ()
        assert updated.activity_log == (entry,)
        assert updated.id == session.id

    def test_finish_once(self) -> None:
        """A session reaches exactly one final status."""
        session = Session(deployment_id="dep-1", attempt_number=1)
        done = session.finish(SessionStatus.COMPLETED, summary="fixed")

        assert done.status == SessionStatus.COMPLETED
        assert done.completed_at is not None
        assert not done.is_active
        with pytest.raises(InvalidTransitionError):
            done.finish(SessionStatus.FAILED)

    def test_finish_requires_final_status(self) -> None:
        """ACTIVE is not a final status."""
        session = Session(deployment_id="dep-1", attempt_number=1)
        with pytest.raises(InvalidTransitionError):
            session.finish(SessionStatus.ACTIVE)

    def test_replay_file_changes(self) -> None:
        """Replaying changes in order reproduces the final contents."""
        snapshot = {"Dockerfile": "FROM node:18\n"}
        changes = [
            FileChange(
                file="Dockerfile",
                before="FROM node:18\n",
                after="FROM node:20\n",
                reason="upgrade",
            ),
            FileChange(
                file=".env.example", before=None, after="PORT=3000\n", reason=""
            ),
            FileChange(
                file="Dockerfile",
                before="FROM node:20\n",
                after="FROM node:20-alpine\n",
                reason="smaller base",
            ),
        ]

        result = replay_file_changes(snapshot, changes)

        assert result == {
            "Dockerfile": "FROM node:20-alpine\n",
            ".env.example": "PORT=3000\n",
        }
        assert snapshot == {"Dockerfile": "FROM node:18\n"}

    def test_replay_rejects_mismatched_before(self) -> None:
        """A change whose before does not match is refused."""
        change = FileChange(file="Dockerfile", before="other", after="x", reason="")
        with pytest.raises(ValueError, match="does not apply cleanly"):
            replay_file_changes({"Dockerfile": "FROM node:20\n"}, [change])


class TestRemediationModels:
    """Tests for advisor proposal validation."""

    @pytest.mark.parametrize("name", ["", "/etc/passwd", "../secrets", "a/../../b"])
    def test_unsafe_file_names_rejected(self, name: str) -> None:
        """Edits may only target relative paths inside the config set."""
        with pytest.raises(ValidationError):
            FileEdit(file=name, content="x")

    def test_nested_file_name_allowed(self) -> None:
        """Subdirectories are fine."""
        assert FileEdit(file="nginx/default.conf", content="x").file == (
            "nginx/default.conf"
        )

    def test_unfixable_with_edits_rejected(self) -> None:
        """A refusal carries no edits."""
        with pytest.raises(ValidationError, match="must not contain edits"):
            RemediationProposal(
                unfixable=True, edits=(FileEdit(file="Dockerfile", content="x"),)
            )


class TestStreamEvent:
    """Tests for progress stream events."""

    def test_progress_drops_unset_fields(self) -> None:
        """Progress events only carry fields that changed."""
        event = StreamEvent.progress("dep-1", status="building", deploy_url=None)

        assert event.type == EventType.PROGRESS
        assert event.data == {"status": "building"}

    def test_done_event(self) -> None:
        """done carries the final status and optional error."""
        assert StreamEvent.done("dep-1", "running").data == {"status": "running"}
        assert StreamEvent.done("dep-1", "failed", "boom").data == {
            "status": "failed",
            "error": "boom",
        }

    def test_to_sse_frame(self) -> None:
        """Events render as Server-Sent Events frames."""
        event = StreamEvent.error("dep-1", "Build failed", "ExecutorFailure")
        event = event.model_copy(update={"sequence": 7})

        frame = event.to_sse()

        lines = frame.split("\n")
        assert lines[0] == "id: 7"
        assert lines[1] == "event: error"
        assert lines[2].startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(lines[2][len("data: ") :])
        assert payload["id"] == "dep-1"
        assert payload["sequence"] == 7
        assert payload["code"] == "ExecutorFailure"
