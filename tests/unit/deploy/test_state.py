"""Unit tests for deployment state persistence."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dockpilot.deploy.state import DeploymentStateStore, load_state, save_state
from dockpilot.lib.errors import DeploymentError, DeploymentNotFoundError
from dockpilot.models.deployment import Deployment, DeploymentStatus
from dockpilot.models.deployment_state import DeploymentState
from dockpilot.models.session import Session, SessionStatus


def _deployment(config_set_id: str = "cs-1", minutes_ago: int = 0) -> Deployment:
    return Deployment(
        config_set_id=config_set_id,
        project_id="shop",
        name="shop-web-v1",
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


class TestDeploymentStateIO:
    """Tests for DeploymentState read/write helpers."""

    def test_load_state_missing_returns_default(self, tmp_path: Path) -> None:
        """Missing state file returns default state."""
        state = load_state(tmp_path / "deployments.json")

        assert state.version == "1.0"
        assert state.deployments == {}
        assert state.sessions == {}

    def test_load_state_empty_file(self, tmp_path: Path) -> None:
        """An empty file is treated like a missing one."""
        state_path = tmp_path / "deployments.json"
        state_path.write_text("  \n", encoding="utf-8")

        assert load_state(state_path).deployments == {}

    def test_save_and_load_round_trip(self, tmp_path: Path) -> None:
        """Saving and loading state preserves records."""
        state_path = tmp_path / "nested" / "deployments.json"
        deployment = _deployment()
        session = Session(deployment_id=deployment.id, attempt_number=1)
        state = DeploymentState(
            deployments={deployment.id: deployment}, sessions={session.id: session}
        )

        save_state(state_path, state)
        loaded = load_state(state_path)

        assert loaded.deployments[deployment.id] == deployment
        assert loaded.sessions[session.id] == session

    def test_load_state_invalid_json_raises(self, tmp_path: Path) -> None:
        """Invalid JSON should raise DeploymentError."""
        state_path = tmp_path / "deployments.json"
        state_path.write_text("{invalid}", encoding="utf-8")

        with pytest.raises(DeploymentError, match="Invalid deployment state format"):
            load_state(state_path)

    def test_load_state_invalid_schema_raises(self, tmp_path: Path) -> None:
        """Invalid schema should raise DeploymentError."""
        state_path = tmp_path / "deployments.json"
        payload = {"version": "1.0", "deployments": []}
        state_path.write_text(json.dumps(payload), encoding="utf-8")

        with pytest.raises(DeploymentError) as exc_info:
            load_state(state_path)

        assert exc_info.value.operation == "state"


class TestDeploymentStateStore:
    """Tests for DeploymentStateStore."""

    def test_get_unknown_deployment(self) -> None:
        """Unknown ids raise DeploymentNotFoundError."""
        store = DeploymentStateStore()

        with pytest.raises(DeploymentNotFoundError) as exc_info:
            store.get_deployment("nope")

        assert exc_info.value.code == "NotFound"

    def test_save_replaces_snapshot(self) -> None:
        """Saving a newer snapshot replaces the record."""
        store = DeploymentStateStore()
        deployment = store.save_deployment(_deployment())

        store.save_deployment(deployment.transition(DeploymentStatus.PRE_FLIGHT))

        assert store.get_deployment(deployment.id).status == (
            DeploymentStatus.PRE_FLIGHT
        )

    def test_list_filters_and_orders(self) -> None:
        """Deployments are listed newest first and can be filtered."""
        store = DeploymentStateStore()
        old = store.save_deployment(_deployment("cs-1", minutes_ago=10))
        new = store.save_deployment(_deployment("cs-1", minutes_ago=1))
        other = store.save_deployment(
            _deployment("cs-2").transition(DeploymentStatus.CANCELLED)
        )

        assert [d.id for d in store.list_deployments()] == [other.id, new.id, old.id]
        assert [d.id for d in store.list_deployments(config_set_id="cs-1")] == [
            new.id,
            old.id,
        ]
        assert [
            d.id for d in store.list_deployments(status=DeploymentStatus.CANCELLED)
        ] == [other.id]

    def test_sessions_ordered_by_attempt(self) -> None:
        """Sessions are listed by attempt number."""
        store = DeploymentStateStore()
        deployment = store.save_deployment(_deployment())
        second = store.save_session(
            Session(deployment_id=deployment.id, attempt_number=2)
        )
        first = store.save_session(
            Session(deployment_id=deployment.id, attempt_number=1)
        )

        assert [s.id for s in store.list_sessions(deployment.id)] == [
            first.id,
            second.id,
        ]
        assert store.get_session(first.id) == first
        assert store.get_session("missing") is None

    def test_session_requires_deployment(self) -> None:
        """A session cannot be stored for an unknown deployment."""
        store = DeploymentStateStore()

        with pytest.raises(DeploymentNotFoundError):
            store.save_session(Session(deployment_id="ghost", attempt_number=1))

    def test_delete_cascades_to_sessions(self) -> None:
        """Deleting a deployment removes its sessions."""
        store = DeploymentStateStore()
        deployment = store.save_deployment(_deployment())
        kept = store.save_deployment(_deployment("cs-2"))
        session = store.save_session(
            Session(deployment_id=deployment.id, attempt_number=1)
        )
        other = store.save_session(Session(deployment_id=kept.id, attempt_number=1))

        store.delete_deployment(deployment.id)

        assert store.get_session(session.id) is None
        assert store.get_session(other.id) == other
        with pytest.raises(DeploymentNotFoundError):
            store.delete_deployment(deployment.id)

    def test_persists_after_every_write(self, tmp_path: Path) -> None:
        """A store with a path reloads what an earlier instance wrote."""
        state_path = tmp_path / "deployments.json"
        store = DeploymentStateStore(state_path)
        deployment = store.save_deployment(_deployment())
        session = store.save_session(
            Session(deployment_id=deployment.id, attempt_number=1).finish(
                SessionStatus.FAILED, error="boom", error_code="Unfixable"
            )
        )

        reloaded = DeploymentStateStore(state_path)

        assert reloaded.get_deployment(deployment.id) == deployment
        assert reloaded.list_sessions(deployment.id) == [session]
