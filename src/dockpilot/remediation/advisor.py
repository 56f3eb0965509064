"""Remediation advisor contract.

An advisor turns failing logs and the current artifact contents into a
``RemediationProposal``. How it reasons is its own business; the session
only sees the proposal and the activity reported along the way.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from dockpilot.models.remediation import (
    RemediationProposal,
    RemediationRequest,
    ToolInvocation,
)
from dockpilot.models.session import ActivityType

ActivityReporter = Callable[[ToolInvocation], None]

NO_PROVIDER_MESSAGE = "No AI provider configured"


class BaseAdvisor(ABC):
    """Abstract base class for remediation advisors."""

    @abstractmethod
    async def propose(
        self, request: RemediationRequest, report: ActivityReporter
    ) -> RemediationProposal:
        """Propose edits that should make the next build succeed.

        Args:
            request: Failing logs, error analysis and artifact contents.
            report: Callback for tool invocations, in the order they happen.

        Returns:
            Proposal with edits, or ``unfixable=True`` to decline.
        """


class DisabledAdvisor(BaseAdvisor):
    """Advisor used when no AI provider is configured.

    Always declines, so a failed build ends the deployment after a single
    session.
    """

    async def propose(
        self, request: RemediationRequest, report: ActivityReporter
    ) -> RemediationProposal:
        report(
            ToolInvocation(
                type=ActivityType.ERROR,
                action="configure_provider",
                output=NO_PROVIDER_MESSAGE,
            )
        )
        return RemediationProposal(
            unfixable=True,
            rationale=NO_PROVIDER_MESSAGE,
            agent_state=request.agent_state,
        )
