"""Deployment state tracking.

``DeploymentStateStore`` is the record surface API consumers poll. It keeps
the state in memory and, when given a path, rewrites the JSON file after
every change.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from dockpilot.lib.errors import DeploymentError, DeploymentNotFoundError
from dockpilot.lib.logging_config import get_logger
from dockpilot.models.deployment import Deployment, DeploymentStatus
from dockpilot.models.deployment_state import DeploymentState
from dockpilot.models.session import Session

logger = get_logger(__name__)

STATE_VERSION = "1.0"


def load_state(state_path: Path) -> DeploymentState:
    """Load deployment state data from disk."""
    if not state_path.exists():
        return DeploymentState(version=STATE_VERSION)

    try:
        content = state_path.read_text(encoding="utf-8")
        if not content.strip():
            return DeploymentState(version=STATE_VERSION)
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to read deployment state at {state_path}: {exc}",
        ) from exc

    try:
        state = DeploymentState.model_validate_json(content)
    except ValidationError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Invalid deployment state format in {state_path}: {exc}",
        ) from exc

    if not state.version:
        state = state.model_copy(update={"version": STATE_VERSION})
    return state


def save_state(state_path: Path, state: DeploymentState) -> None:
    """Persist deployment state data to disk."""
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)
        state_path.write_text(payload, encoding="utf-8")
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to write deployment state to {state_path}: {exc}",
        ) from exc


class DeploymentStateStore:
    """Deployment and session records, optionally backed by a JSON file.

    Args:
        state_path: File to persist to. Records stay in memory when None.
    """

    def __init__(self, state_path: Path | None = None) -> None:
        self.state_path = state_path
        if state_path is not None:
            self._state = load_state(state_path)
        else:
            self._state = DeploymentState(version=STATE_VERSION)

    def _flush(self) -> None:
        if self.state_path is not None:
            save_state(self.state_path, self._state)

    def save_deployment(self, deployment: Deployment) -> Deployment:
        """Insert or replace a deployment record."""
        self._state.deployments[deployment.id] = deployment
        self._flush()
        return deployment

    def get_deployment(self, deployment_id: str) -> Deployment:
        """Return a deployment record.

        Raises:
            DeploymentNotFoundError: If the id is unknown.
        """
        try:
            return self._state.deployments[deployment_id]
        except KeyError:
            raise DeploymentNotFoundError(deployment_id) from None

    def list_deployments(
        self,
        config_set_id: str | None = None,
        status: DeploymentStatus | None = None,
    ) -> list[Deployment]:
        """Return deployments, newest first, optionally filtered."""
        deployments = [
            d
            for d in self._state.deployments.values()
            if (config_set_id is None or d.config_set_id == config_set_id)
            and (status is None or d.status == status)
        ]
        return sorted(deployments, key=lambda d: d.created_at, reverse=True)

    def delete_deployment(self, deployment_id: str) -> None:
        """Delete a deployment and every session it owns."""
        if deployment_id not in self._state.deployments:
            raise DeploymentNotFoundError(deployment_id)
        del self._state.deployments[deployment_id]
        owned = [
            sid
            for sid, session in self._state.sessions.items()
            if session.deployment_id == deployment_id
        ]
        for session_id in owned:
            del self._state.sessions[session_id]
        self._flush()
        logger.info(
            f"Deleted deployment {deployment_id} and {len(owned)} sessions"
        )

    def save_session(self, session: Session) -> Session:
        """Insert or replace a session record.

        Raises:
            DeploymentNotFoundError: If the owning deployment is unknown.
        """
        if session.deployment_id not in self._state.deployments:
            raise DeploymentNotFoundError(session.deployment_id)
        self._state.sessions[session.id] = session
        self._flush()
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Return a session record or None."""
        return self._state.sessions.get(session_id)

    def list_sessions(self, deployment_id: str) -> list[Session]:
        """Return a deployment's sessions ordered by attempt number."""
        sessions = [
            s for s in self._state.sessions.values() if s.deployment_id == deployment_id
        ]
        return sorted(sessions, key=lambda s: (s.attempt_number, s.started_at))
