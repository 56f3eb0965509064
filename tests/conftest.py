"""Pytest configuration and shared fixtures for DockPilot tests."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable, Generator
from pathlib import Path

import pytest
import pytest_asyncio
from doubles import BROKEN_DOCKERFILE, COMPOSE_FILE, FakeExecutor

from dockpilot.deploy.artifacts import InMemoryArtifactStore
from dockpilot.deploy.state import DeploymentStateStore
from dockpilot.models.artifacts import ConfigSet
from dockpilot.models.config import OrchestratorConfig
from dockpilot.orchestrator import DeploymentOrchestrator
from dockpilot.remediation.advisor import BaseAdvisor


@pytest.fixture
def isolated_env() -> Generator[dict[str, str], None, None]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def orchestrator_config(tmp_path: Path) -> OrchestratorConfig:
    """Orchestrator settings with short timeouts and paths under tmp_path."""
    return OrchestratorConfig(
        executor_timeout=5,
        advisor_timeout=5,
        artifact_write_timeout=5,
        heartbeat_interval=5,
        state_path=tmp_path / "deployments.json",
        artifacts_root=tmp_path / "configs",
        build_root=tmp_path / "builds",
    )


@pytest.fixture
def artifacts() -> InMemoryArtifactStore:
    """Empty in-memory artifact store."""
    return InMemoryArtifactStore()


@pytest.fixture
def state_store() -> DeploymentStateStore:
    """In-memory deployment state store."""
    return DeploymentStateStore()


@pytest.fixture
def executor() -> FakeExecutor:
    """Executor whose builds and deploys succeed unless scripted otherwise."""
    return FakeExecutor()


@pytest_asyncio.fixture
async def config_set(artifacts: InMemoryArtifactStore) -> ConfigSet:
    """A registered config set with a Dockerfile missing the lock file copy."""
    return await artifacts.register(
        ConfigSet(project_id="shop", name="shop-web"),
        {"Dockerfile": BROKEN_DOCKERFILE, "docker-compose.yml": COMPOSE_FILE},
    )


@pytest.fixture
def make_orchestrator(
    artifacts: InMemoryArtifactStore,
    state_store: DeploymentStateStore,
    orchestrator_config: OrchestratorConfig,
    executor: FakeExecutor,
) -> Callable[..., DeploymentOrchestrator]:
    """Factory building an orchestrator around the shared stores and executor."""

    def _make(
        advisor: BaseAdvisor | None = None,
        config: OrchestratorConfig | None = None,
    ) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(
            artifacts=artifacts,
            state=state_store,
            config=config or orchestrator_config,
            advisor=advisor,
            executor_factory=lambda platform: executor,
        )

    return _make


@pytest_asyncio.fixture
async def orchestrator(
    make_orchestrator: Callable[..., DeploymentOrchestrator],
) -> AsyncGenerator[DeploymentOrchestrator, None]:
    """Orchestrator with the declining advisor; shut down after the test."""
    instance = make_orchestrator()
    yield instance
    await instance.shutdown()
