"""Base interface for build/run executors."""

from __future__ import annotations

from abc import ABC, abstractmethod

from dockpilot.models.executor import (
    BuildOutcome,
    BuildRequest,
    DeployOutcome,
    HealthStatus,
    PreflightCheck,
)


class BaseExecutor(ABC):
    """Abstract base class for platform executors.

    Build and deploy failures are reported through ``ok=False`` outcomes,
    never raised, so the orchestrator can hand their logs to remediation.
    """

    #: Artifact files that must exist before a build can start
    required_artifacts: tuple[str, ...] = ()

    @abstractmethod
    async def preflight(self) -> list[PreflightCheck]:
        """Check that the platform is ready to build and run.

        Returns:
            One PreflightCheck per check performed.
        """

    @abstractmethod
    async def build(self, request: BuildRequest) -> BuildOutcome:
        """Build an image from the request's artifacts.

        Args:
            request: Deployment, attempt and artifact contents.

        Returns:
            BuildOutcome with the image reference on success.
        """

    @abstractmethod
    async def deploy(self, request: BuildRequest, build: BuildOutcome) -> DeployOutcome:
        """Start a container from a successful build.

        Args:
            request: The request the image was built from.
            build: Successful build outcome.

        Returns:
            DeployOutcome with container id, ports and URL on success, or
            a ``fault`` category for unrecoverable resource faults.

        A call that fails or is cancelled after starting a container removes
        that container before returning or re-raising.
        """

    @abstractmethod
    async def health_check(self, container_id: str) -> HealthStatus:
        """Probe a running container."""

    @abstractmethod
    async def logs(self, container_id: str, tail: int = 200) -> str:
        """Return the last ``tail`` lines of container output."""

    @abstractmethod
    async def teardown(self, container_id: str) -> None:
        """Stop and remove a container. Unknown containers are ignored."""
