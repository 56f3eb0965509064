"""Deployment orchestration: run loop, remediation sessions and progress fan-out."""

from dockpilot.orchestrator.broadcaster import ProgressBroadcaster, Subscription
from dockpilot.orchestrator.orchestrator import DeploymentOrchestrator
from dockpilot.orchestrator.session import RemediationSession
from dockpilot.orchestrator.tokens import CancelToken, ExecutionTokenRegistry

__all__ = [
    "CancelToken",
    "DeploymentOrchestrator",
    "ExecutionTokenRegistry",
    "ProgressBroadcaster",
    "RemediationSession",
    "Subscription",
]
