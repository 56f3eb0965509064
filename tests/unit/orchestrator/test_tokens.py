"""Unit tests for cancel tokens and the active-session registry."""

from __future__ import annotations

import asyncio

import pytest

from dockpilot.lib.errors import CancelledByOperator, SessionConflictError
from dockpilot.orchestrator.tokens import CancelToken, ExecutionTokenRegistry


class TestCancelToken:
    """Tests for CancelToken."""

    def test_check_before_and_after_cancel(self) -> None:
        """check() only raises once cancellation was requested."""
        token = CancelToken("dep-1")
        token.check()

        token.cancel()
        token.cancel()

        assert token.cancelled
        with pytest.raises(CancelledByOperator) as exc_info:
            token.check()
        assert exc_info.value.deployment_id == "dep-1"

    @pytest.mark.asyncio
    async def test_wait_returns_on_cancel(self) -> None:
        """wait() unblocks when cancel() is called."""
        token = CancelToken("dep-1")
        waiter = asyncio.ensure_future(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        token.cancel()

        await asyncio.wait_for(waiter, timeout=1)


class TestExecutionTokenRegistry:
    """Tests for ExecutionTokenRegistry."""

    def test_one_active_session_per_deployment(self) -> None:
        """A second session cannot become active."""
        registry = ExecutionTokenRegistry()
        registry.acquire("dep-1", "s-1")

        with pytest.raises(SessionConflictError) as exc_info:
            registry.acquire("dep-1", "s-2")

        assert exc_info.value.active_session_id == "s-1"
        assert registry.active("dep-1") == "s-1"

    def test_reacquire_same_session(self) -> None:
        """Acquiring again with the same session is allowed."""
        registry = ExecutionTokenRegistry()
        registry.acquire("dep-1", "s-1")
        registry.acquire("dep-1", "s-1")

        assert registry.active("dep-1") == "s-1"

    def test_deployments_are_independent(self) -> None:
        """Tokens are scoped per deployment."""
        registry = ExecutionTokenRegistry()
        registry.acquire("dep-1", "s-1")
        registry.acquire("dep-2", "s-2")

        assert registry.active("dep-2") == "s-2"

    def test_stale_release_is_noop(self) -> None:
        """Releasing a token that is not held changes nothing."""
        registry = ExecutionTokenRegistry()
        registry.acquire("dep-1", "s-1")

        registry.release("dep-1", "s-old")

        assert registry.active("dep-1") == "s-1"

    def test_hold_releases_on_error(self) -> None:
        """The token is released even when the block raises."""
        registry = ExecutionTokenRegistry()

        with pytest.raises(RuntimeError):
            with registry.hold("dep-1", "s-1"):
                assert registry.active("dep-1") == "s-1"
                raise RuntimeError("boom")

        assert registry.active("dep-1") is None
        registry.acquire("dep-1", "s-2")
