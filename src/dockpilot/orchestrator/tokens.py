"""Execution tokens: cancellation flags and the active-session registry."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager

from dockpilot.lib.errors import CancelledByOperator, SessionConflictError


class CancelToken:
    """Cooperative cancellation flag for one deployment run."""

    def __init__(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        """True once cancellation was requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    def check(self) -> None:
        """Raise CancelledByOperator if cancellation was requested."""
        if self._event.is_set():
            raise CancelledByOperator(self.deployment_id)

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()


class ExecutionTokenRegistry:
    """Maps a deployment id to its single active session id."""

    def __init__(self) -> None:
        self._active: dict[str, str] = {}

    def active(self, deployment_id: str) -> str | None:
        """Return the active session of a deployment, if any."""
        return self._active.get(deployment_id)

    def acquire(self, deployment_id: str, session_id: str) -> None:
        """Mark a session active.

        Raises:
            SessionConflictError: If another session is already active.
        """
        current = self._active.get(deployment_id)
        if current is not None and current != session_id:
            raise SessionConflictError(deployment_id, current)
        self._active[deployment_id] = session_id

    def release(self, deployment_id: str, session_id: str) -> None:
        """Release a session's token. Releasing a stale token is a no-op."""
        if self._active.get(deployment_id) == session_id:
            del self._active[deployment_id]

    @contextmanager
    def hold(self, deployment_id: str, session_id: str) -> Iterator[None]:
        """Hold the token for the duration of a block."""
        self.acquire(deployment_id, session_id)
        try:
            yield
        finally:
            self.release(deployment_id, session_id)
