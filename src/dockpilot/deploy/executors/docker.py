"""Docker executor.

Builds images and runs containers on the local Docker daemon using the
Docker SDK. SDK calls are blocking and run in worker threads.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

import docker
from docker.errors import APIError, BuildError, DockerException, NotFound

from dockpilot.config.defaults import (
    DOCKER_REQUIRED_ARTIFACTS,
    MIN_FREE_DISK_BYTES,
    RUNTIME_LOG_TAIL,
)
from dockpilot.deploy.dockerfile import parse_exposed_ports
from dockpilot.deploy.error_parser import ErrorStage, parse_error
from dockpilot.deploy.executors.base import BaseExecutor
from dockpilot.lib.errors import DockerNotAvailableError
from dockpilot.lib.logging_config import get_logger
from dockpilot.models.deployment import PortMapping
from dockpilot.models.executor import (
    BuildOutcome,
    BuildRequest,
    DeployOutcome,
    HealthStatus,
    PreflightCheck,
)

if TYPE_CHECKING:
    from docker.models.containers import Container

logger = get_logger(__name__)

MANAGED_LABEL = "com.dockpilot.managed"
_CONTEXT_IGNORE = shutil.ignore_patterns(".git", "node_modules", "__pycache__")


def image_reference(request: BuildRequest) -> str:
    """Return the image tag for a build attempt (lowercase, as Docker requires)."""
    return f"dockpilot/{request.deployment_id.lower()}:attempt-{request.attempt_number}"


def _collect_build_logs(entries: Any) -> list[str]:
    """Extract log lines from Docker SDK build output entries."""
    lines: list[str] = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        if "stream" in entry and isinstance(entry["stream"], str):
            lines.append(entry["stream"].rstrip("\n"))
        elif "error" in entry:
            lines.append(f"ERROR: {entry['error']}")
    return lines


def _port_mappings(container: Container) -> tuple[PortMapping, ...]:
    """Read published host ports from a reloaded container."""
    mappings: list[PortMapping] = []
    for key, bindings in sorted((container.ports or {}).items()):
        if not bindings:
            continue
        port, _, protocol = key.partition("/")
        host_port = bindings[0].get("HostPort")
        if host_port:
            mappings.append(
                PortMapping(
                    host=int(host_port),
                    container=int(port),
                    protocol=protocol or "tcp",
                )
            )
    return tuple(mappings)


class DockerExecutor(BaseExecutor):
    """Executor for the local Docker daemon.

    Args:
        build_root: Directory where per-attempt build contexts are assembled.
        client: Docker client. Created from the environment on first use.
        startup_grace: Seconds to wait before checking a new container.
    """

    required_artifacts = DOCKER_REQUIRED_ARTIFACTS

    def __init__(
        self,
        build_root: Path,
        client: docker.DockerClient | None = None,
        startup_grace: float = 2.0,
    ) -> None:
        self.build_root = Path(build_root)
        self._client = client
        self.startup_grace = startup_grace

    @property
    def client(self) -> docker.DockerClient:
        """Docker client, connected lazily.

        Raises:
            DockerNotAvailableError: If Docker daemon is not available
        """
        if self._client is None:
            try:
                self._client = docker.from_env()  # type: ignore[attr-defined]
            except DockerException as e:
                raise DockerNotAvailableError(operation="init") from e
        return self._client

    def _check_daemon(self) -> PreflightCheck:
        try:
            self.client.ping()
        except DockerException as e:
            return PreflightCheck(
                name="docker_running",
                passed=False,
                message=f"Docker daemon is not reachable: {e}",
            )
        return PreflightCheck(
            name="docker_running", passed=True, message="Docker daemon is running"
        )

    def _check_disk(self) -> PreflightCheck:
        probe = self.build_root
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        free = shutil.disk_usage(probe).free
        if free < MIN_FREE_DISK_BYTES:
            return PreflightCheck(
                name="disk_space",
                passed=False,
                message=f"Only {free // (1024 * 1024)} MB free under {probe}",
            )
        return PreflightCheck(
            name="disk_space",
            passed=True,
            message=f"{free // (1024 * 1024)} MB free",
        )

    async def preflight(self) -> list[PreflightCheck]:
        try:
            daemon = await asyncio.to_thread(self._check_daemon)
        except DockerNotAvailableError as e:
            daemon = PreflightCheck(
                name="docker_running", passed=False, message=e.message
            )
        disk = await asyncio.to_thread(self._check_disk)
        return [daemon, disk]

    def _prepare_context(self, request: BuildRequest) -> Path:
        attempt = f"attempt-{request.attempt_number}"
        context = self.build_root / request.deployment_id / attempt
        if context.exists():
            shutil.rmtree(context)
        if request.project_path:
            shutil.copytree(request.project_path, context, ignore=_CONTEXT_IGNORE)
        else:
            context.mkdir(parents=True)
        for file_name, content in request.files.items():
            target = context / file_name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return context

    def _build(self, request: BuildRequest) -> BuildOutcome:
        context = self._prepare_context(request)
        tag = image_reference(request)
        try:
            image, build_logs = self.client.images.build(
                path=str(context),
                tag=tag,
                labels={
                    MANAGED_LABEL: "true",
                    "com.dockpilot.deployment": request.deployment_id,
                },
                rm=True,  # Remove intermediate containers
            )
        except BuildError as e:
            lines = _collect_build_logs(e.build_log)
            lines.append(f"ERROR: Docker build failed: {e.msg}")
            return BuildOutcome(ok=False, logs="\n".join(lines))
        except DockerException as e:
            return BuildOutcome(ok=False, logs=f"Docker error during build: {e}")

        return BuildOutcome(
            ok=True,
            logs="\n".join(_collect_build_logs(build_logs)),
            image_id=image.id or None,
            image_tag=tag,
        )

    async def build(self, request: BuildRequest) -> BuildOutcome:
        logger.info(
            f"Building {request.deployment_id} attempt {request.attempt_number}"
        )
        return await asyncio.to_thread(self._build, request)

    def _run(self, request: BuildRequest, build: BuildOutcome) -> Container:
        exposed = parse_exposed_ports(request.files.get("Dockerfile", ""))
        ports = {f"{port}/{protocol}": None for port, protocol in exposed}
        return self.client.containers.run(
            build.image_tag,
            detach=True,
            name=f"dockpilot-{request.deployment_id.lower()}-{request.attempt_number}",
            ports=ports,
            labels={
                MANAGED_LABEL: "true",
                "com.dockpilot.deployment": request.deployment_id,
            },
        )

    async def deploy(self, request: BuildRequest, build: BuildOutcome) -> DeployOutcome:
        run = asyncio.ensure_future(asyncio.to_thread(self._run, request, build))
        try:
            container = await asyncio.shield(run)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; remove what it started
            await asyncio.wait({run})
            if not run.cancelled() and run.exception() is None:
                await self._discard(run.result())
            raise
        except APIError as e:
            logs = f"Docker error during deploy: {e.explanation or e}"
            parsed = parse_error(logs, ErrorStage.DEPLOY)
            return DeployOutcome(
                ok=False,
                logs=logs,
                fault=parsed.category.value if parsed.is_resource_fault else None,
            )
        except DockerException as e:
            return DeployOutcome(ok=False, logs=f"Docker error during deploy: {e}")

        try:
            return await self._inspect(container)
        except DockerException as e:
            await self._discard(container)
            return DeployOutcome(
                ok=False, logs=f"Docker error while starting container: {e}"
            )
        except asyncio.CancelledError:
            await self._discard(container)
            raise

    async def _inspect(self, container: Container) -> DeployOutcome:
        await asyncio.sleep(self.startup_grace)
        await asyncio.to_thread(container.reload)
        logs = await self.logs(container.id)

        if container.status != "running":
            state = container.attrs.get("State", {})
            exit_code = state.get("ExitCode")
            logs = f"{logs}\nContainer exited with code {exit_code}".strip()
            parsed = parse_error(logs, ErrorStage.DEPLOY)
            if state.get("OOMKilled"):
                fault = "memory_exceeded"
            else:
                fault = parsed.category.value if parsed.is_resource_fault else None
            return DeployOutcome(
                ok=False, logs=logs, container_id=container.id, fault=fault
            )

        ports = _port_mappings(container)
        url = f"http://localhost:{ports[0].host}" if ports else None
        return DeployOutcome(
            ok=True, logs=logs, container_id=container.id, ports=ports, url=url
        )

    async def _discard(self, container: Container) -> None:
        logger.info(f"Removing container {container.id[:12]} of an unfinished deploy")
        try:
            await asyncio.to_thread(container.remove, force=True)
        except DockerException as e:
            logger.warning(f"Failed to remove container {container.id[:12]}: {e}")

    def _health(self, container_id: str) -> HealthStatus:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return HealthStatus.DEGRADED
        if container.status != "running":
            return HealthStatus.DEGRADED
        health = container.attrs.get("State", {}).get("Health") or {}
        if health.get("Status") == "unhealthy":
            return HealthStatus.DEGRADED
        return HealthStatus.OK

    async def health_check(self, container_id: str) -> HealthStatus:
        return await asyncio.to_thread(self._health, container_id)

    def _logs(self, container_id: str, tail: int) -> str:
        try:
            container = self.client.containers.get(container_id)
            output = container.logs(tail=tail)
        except NotFound:
            return ""
        if isinstance(output, bytes):
            return output.decode("utf-8", errors="replace")
        return str(output)

    async def logs(self, container_id: str, tail: int = RUNTIME_LOG_TAIL) -> str:
        return await asyncio.to_thread(self._logs, container_id, tail)

    def _teardown(self, container_id: str) -> None:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return
        container.remove(force=True)

    async def teardown(self, container_id: str) -> None:
        logger.info(f"Removing container {container_id[:12]}")
        await asyncio.to_thread(self._teardown, container_id)
