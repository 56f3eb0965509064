"""Deployment orchestrator.

Drives a deployment from ``pending`` to a terminal state: pre-flight,
build, deploy, and a bounded build-fail/remediate/rebuild loop. Each
deployment runs as its own task; its transitions are serialized by a
per-deployment lock and persisted and broadcast as they happen.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from dockpilot.deploy.artifacts import ArtifactStore
from dockpilot.deploy.error_parser import ErrorStage, parse_error
from dockpilot.deploy.executors import BaseExecutor, create_executor
from dockpilot.deploy.state import DeploymentStateStore
from dockpilot.lib.errors import (
    ArtifactNotFoundError,
    AttemptsExhausted,
    CancelledByOperator,
    DeploymentBusyError,
    DeploymentError,
    DockPilotError,
    ExecutorFailure,
    ExecutorTimeout,
    InvalidTransitionError,
    ResourceFault,
    Unfixable,
    ValidationError,
)
from dockpilot.lib.logging_config import get_logger
from dockpilot.models.artifacts import ConfigSet
from dockpilot.models.config import OrchestratorConfig
from dockpilot.models.deployment import (
    ENABLED_PLATFORMS,
    Deployment,
    DeploymentPlatform,
    DeploymentStatus,
)
from dockpilot.models.events import StreamEvent
from dockpilot.models.executor import (
    BuildOutcome,
    BuildRequest,
    DeployOutcome,
    HealthStatus,
)
from dockpilot.models.session import Session, SessionStatus
from dockpilot.orchestrator.broadcaster import ProgressBroadcaster, Subscription
from dockpilot.orchestrator.session import RemediationSession
from dockpilot.orchestrator.tokens import CancelToken, ExecutionTokenRegistry
from dockpilot.remediation.advisor import BaseAdvisor, DisabledAdvisor

logger = get_logger(__name__)

T = TypeVar("T")

ExecutorFactory = Callable[[DeploymentPlatform], BaseExecutor]

_IN_FLIGHT = frozenset(
    {
        DeploymentStatus.PRE_FLIGHT,
        DeploymentStatus.BUILDING,
        DeploymentStatus.DEPLOYING,
    }
)

_SESSION_FIELD_ALIASES = {"status": "session_status", "error": "session_error"}


class DeploymentOrchestrator:
    """Runs deployments and their remediation sessions.

    Args:
        artifacts: Store holding config sets.
        state: Record store for deployments and sessions.
        config: Orchestrator settings. Defaults apply when omitted.
        advisor: Remediation advisor. Declines every request when omitted.
        broadcaster: Progress fan-out. Created from config when omitted.
        executor_factory: Returns the executor for a platform.
    """

    def __init__(
        self,
        *,
        artifacts: ArtifactStore,
        state: DeploymentStateStore,
        config: OrchestratorConfig | None = None,
        advisor: BaseAdvisor | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        executor_factory: ExecutorFactory | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.artifacts = artifacts
        self.state = state
        self.advisor = advisor or DisabledAdvisor()
        self.broadcaster = broadcaster or ProgressBroadcaster(
            backlog_size=self.config.backlog_size,
            heartbeat_interval=self.config.heartbeat_interval,
        )
        self._executor_factory = executor_factory or (
            lambda platform: create_executor(platform, self.config.build_root)
        )
        self._executors: dict[DeploymentPlatform, BaseExecutor] = {}
        self.registry = ExecutionTokenRegistry()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._tasks: dict[str, asyncio.Task[Deployment]] = {}
        self._cancel_tokens: dict[str, CancelToken] = {}
        self._detached: set[asyncio.Future[Any]] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_deployment(self, deployment_id: str) -> Deployment:
        """Return the latest snapshot of a deployment."""
        return self.state.get_deployment(deployment_id)

    def list_deployments(
        self,
        config_set_id: str | None = None,
        status: DeploymentStatus | None = None,
    ) -> list[Deployment]:
        """Return deployments, newest first."""
        return self.state.list_deployments(config_set_id=config_set_id, status=status)

    def list_sessions(self, deployment_id: str) -> list[Session]:
        """Return a deployment's sessions ordered by attempt."""
        self.state.get_deployment(deployment_id)
        return self.state.list_sessions(deployment_id)

    def is_running(self, deployment_id: str) -> bool:
        """True while a run task exists for the deployment."""
        task = self._tasks.get(deployment_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_deployment(
        self,
        config_set_id: str,
        *,
        platform: DeploymentPlatform | None = None,
        max_attempts: int | None = None,
        custom_instructions: str | None = None,
        name: str | None = None,
        environment: str = "development",
        notes: str | None = None,
    ) -> Deployment:
        """Create a pending deployment for a config set.

        Raises:
            ArtifactNotFoundError: If the config set is unknown.
        """
        config_set: ConfigSet = await self.artifacts.get_config_set(config_set_id)
        deployment = Deployment(
            config_set_id=config_set.id,
            project_id=config_set.project_id,
            name=name or f"{config_set.name}-v{config_set.version}",
            project_path=config_set.project_path,
            platform=platform or self.config.default_platform,
            max_attempts=max_attempts or self.config.max_attempts,
            custom_instructions=custom_instructions,
            environment=environment,
            notes=notes,
        )
        self.state.save_deployment(deployment)
        self._publish_progress(
            deployment,
            status=deployment.status.value,
            progress=deployment.progress,
            attempt_number=deployment.attempt_number,
        )
        logger.info(
            f"Created deployment {deployment.id} for config set {config_set.id} "
            f"(platform={deployment.platform.value}, "
            f"max_attempts={deployment.max_attempts})"
        )
        return deployment

    def start(self, deployment_id: str) -> asyncio.Task[Deployment]:
        """Start running a pending deployment in its own task.

        Raises:
            DeploymentNotFoundError: If the id is unknown.
            DeploymentBusyError: If the deployment is already running.
            InvalidTransitionError: If the deployment is not pending.
        """
        deployment = self.state.get_deployment(deployment_id)
        if self.is_running(deployment_id):
            raise DeploymentBusyError(deployment_id)
        if deployment.status != DeploymentStatus.PENDING:
            raise InvalidTransitionError(
                "deployment",
                deployment.status.value,
                DeploymentStatus.PRE_FLIGHT.value,
            )

        token = CancelToken(deployment_id)
        self._cancel_tokens[deployment_id] = token
        task = asyncio.create_task(
            self._run(deployment_id, token), name=f"deployment-{deployment_id}"
        )
        self._tasks[deployment_id] = task
        task.add_done_callback(lambda _: self._forget(deployment_id, task))
        return task

    def _forget(self, deployment_id: str, task: asyncio.Task[Deployment]) -> None:
        self._cancel_tokens.pop(deployment_id, None)
        if self._tasks.get(deployment_id) is task:
            del self._tasks[deployment_id]

    async def deploy(self, config_set_id: str, **options: Any) -> Deployment:
        """Create a deployment and start it; return the pending snapshot."""
        deployment = await self.create_deployment(config_set_id, **options)
        self.start(deployment.id)
        return deployment

    async def wait(self, deployment_id: str) -> Deployment:
        """Wait for a deployment's run task and return the final snapshot."""
        task = self._tasks.get(deployment_id)
        if task is not None:
            await asyncio.shield(task)
        return self.state.get_deployment(deployment_id)

    async def run(self, deployment_id: str) -> Deployment:
        """Start a deployment and wait for it to settle."""
        self.start(deployment_id)
        return await self.wait(deployment_id)

    async def cancel(self, deployment_id: str) -> Deployment:
        """Request cancellation of a deployment.

        A running deployment stops at its next suspension point; use
        ``wait`` for the final snapshot. A pending deployment that was never
        started is cancelled immediately.

        Raises:
            DeploymentNotFoundError: If the id is unknown.
            InvalidTransitionError: If the deployment already settled.
        """
        deployment = self.state.get_deployment(deployment_id)
        if deployment.is_settled:
            raise InvalidTransitionError(
                "deployment",
                deployment.status.value,
                DeploymentStatus.CANCELLED.value,
            )

        token = self._cancel_tokens.get(deployment_id)
        if token is not None:
            logger.info(f"Cancellation requested for deployment {deployment_id}")
            token.cancel()
            return self.state.get_deployment(deployment_id)

        async with self._lock(deployment_id):
            deployment = self.state.get_deployment(deployment_id)
            if deployment.is_settled:
                return deployment
            deployment = self._transition(
                deployment,
                DeploymentStatus.CANCELLED,
                error="Cancelled by operator",
                error_code=CancelledByOperator.code,
            )
            self._publish_done(deployment)
            return deployment

    async def check_health(self, deployment_id: str) -> Deployment:
        """Probe a running deployment and apply the health overlay.

        ``running`` becomes ``degraded`` when the probe fails and
        ``degraded`` returns to ``running`` when it passes. Neither consumes
        an attempt nor starts remediation.

        Raises:
            InvalidTransitionError: If the deployment is not running or degraded.
        """
        async with self._lock(deployment_id):
            deployment = self.state.get_deployment(deployment_id)
            if (
                deployment.status
                not in (DeploymentStatus.RUNNING, DeploymentStatus.DEGRADED)
                or deployment.container_id is None
            ):
                raise InvalidTransitionError(
                    "deployment", deployment.status.value, "health check"
                )

            executor = self._executor(deployment.platform)
            try:
                health = await self._call(
                    "health_check", executor.health_check(deployment.container_id)
                )
            except ExecutorTimeout as e:
                logger.warning(f"Health check of {deployment_id} timed out: {e}")
                health = HealthStatus.DEGRADED

            if (
                health == HealthStatus.DEGRADED
                and deployment.status == DeploymentStatus.RUNNING
            ):
                deployment = self._transition(deployment, DeploymentStatus.DEGRADED)
            elif (
                health == HealthStatus.OK
                and deployment.status == DeploymentStatus.DEGRADED
            ):
                deployment = self._transition(deployment, DeploymentStatus.RUNNING)
            return deployment

    async def shutdown(self) -> None:
        """Cancel every running deployment and wait for them to settle.

        Advisor calls left running by cancelled sessions get up to the
        advisor timeout to finish before they are cancelled.
        """
        for token in list(self._cancel_tokens.values()):
            token.cancel()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._detached:
            _, pending = await asyncio.wait(
                set(self._detached), timeout=self.config.advisor_timeout
            )
            for advice in pending:
                advice.cancel()

    def recover_interrupted(self) -> list[Deployment]:
        """Fail deployments and sessions left in flight by a previous process."""
        recovered: list[Deployment] = []
        for deployment in self.state.list_deployments():
            if deployment.status not in _IN_FLIGHT or self.is_running(deployment.id):
                continue
            for session in self.state.list_sessions(deployment.id):
                if session.status == SessionStatus.ACTIVE:
                    self.state.save_session(
                        session.finish(
                            SessionStatus.FAILED,
                            error="Interrupted by restart",
                            error_code="Interrupted",
                        )
                    )
            deployment = deployment.transition(
                DeploymentStatus.FAILED,
                error="Interrupted by restart",
                error_code="Interrupted",
            )
            self.state.save_deployment(deployment)
            recovered.append(deployment)
            logger.warning(f"Marked interrupted deployment {deployment.id} as failed")
        return recovered

    def subscribe(self, topic: str) -> Subscription:
        """Subscribe to a deployment or session progress topic.

        Topics of records that settled before this process started are
        primed from the state store so the subscriber still sees ``done``.
        """
        known = self.broadcaster.is_done(topic) or self.broadcaster.snapshot(topic)
        if not known:
            deployment = self._find_settled(topic)
            if deployment is not None:
                self.broadcaster.publish(
                    topic,
                    StreamEvent.progress(
                        topic,
                        status=deployment.status.value,
                        progress=deployment.progress,
                        attempt_number=deployment.attempt_number,
                        deploy_url=deployment.deploy_url,
                    ),
                )
                self._publish_done(deployment)
            else:
                session = self.state.get_session(topic)
                if session is not None and session.status != SessionStatus.ACTIVE:
                    self.broadcaster.publish(
                        topic, StreamEvent.progress(topic, status=session.status.value)
                    )
                    self.broadcaster.publish(
                        topic,
                        StreamEvent.done(topic, session.status.value, session.error),
                    )
        return self.broadcaster.subscribe(topic)

    def _find_settled(self, deployment_id: str) -> Deployment | None:
        try:
            deployment = self.state.get_deployment(deployment_id)
        except DockPilotError:
            return None
        return deployment if deployment.is_settled else None

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _lock(self, deployment_id: str) -> AsyncIterator[None]:
        """Hold the deployment's lock; the lock is dropped once unused."""
        lock = self._locks.setdefault(deployment_id, asyncio.Lock())
        self._lock_users[deployment_id] = self._lock_users.get(deployment_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[deployment_id] -= 1
            if not self._lock_users[deployment_id]:
                del self._lock_users[deployment_id]
                del self._locks[deployment_id]

    def _executor(self, platform: DeploymentPlatform) -> BaseExecutor:
        executor = self._executors.get(platform)
        if executor is None:
            executor = self._executors[platform] = self._executor_factory(platform)
        return executor

    async def _call(self, operation: str, call: Awaitable[T]) -> T:
        """Await an executor call under the executor timeout."""
        try:
            return await asyncio.wait_for(call, self.config.executor_timeout)
        except asyncio.TimeoutError as e:
            raise ExecutorTimeout(operation, self.config.executor_timeout) from e

    async def _run(self, deployment_id: str, token: CancelToken) -> Deployment:
        async with self._lock(deployment_id):
            deployment = self.state.get_deployment(deployment_id)
            try:
                deployment = await self._execute(deployment, token)
            except CancelledByOperator as e:
                deployment = self._settle(
                    deployment_id,
                    DeploymentStatus.CANCELLED,
                    error=str(e),
                    error_code=e.code,
                )
            except DockPilotError as e:
                deployment = self._settle(
                    deployment_id,
                    DeploymentStatus.FAILED,
                    error=str(e),
                    error_code=e.code,
                )
            except Exception as e:
                logger.error(
                    f"Unexpected error in deployment {deployment_id}: {e}",
                    exc_info=True,
                )
                deployment = self._settle(
                    deployment_id,
                    DeploymentStatus.FAILED,
                    error=str(e) or type(e).__name__,
                    error_code=type(e).__name__,
                )
            self._publish_done(deployment)
            return deployment

    def _settle(
        self,
        deployment_id: str,
        target: DeploymentStatus,
        *,
        error: str,
        error_code: str,
    ) -> Deployment:
        deployment = self.state.get_deployment(deployment_id)
        if deployment.is_settled:
            return deployment
        if target == DeploymentStatus.FAILED:
            self._publish_error(deployment, error, error_code)
        return self._transition(deployment, target, error=error, error_code=error_code)

    async def _execute(self, deployment: Deployment, token: CancelToken) -> Deployment:
        token.check()
        deployment = self._transition(deployment, DeploymentStatus.PRE_FLIGHT)
        executor = await self._preflight(deployment)

        token.check()
        deployment = self._transition(deployment, DeploymentStatus.BUILDING)
        agent_state: str | None = None

        while True:
            token.check()
            files = await self.artifacts.snapshot(deployment.config_set_id)
            request = BuildRequest(
                deployment_id=deployment.id,
                name=deployment.name,
                attempt_number=deployment.attempt_number,
                project_path=deployment.project_path,
                files=files,
            )

            try:
                build = await self._call("build", executor.build(request))
            except ExecutorTimeout as e:
                build = BuildOutcome(ok=False, logs=str(e))
            token.check()
            deployment = self._save(deployment, build_logs=build.logs)

            if build.ok:
                deployment = self._transition(deployment, DeploymentStatus.DEPLOYING)
                try:
                    outcome = await self._call(
                        "deploy", executor.deploy(request, build)
                    )
                except ExecutorTimeout as e:
                    outcome = DeployOutcome(ok=False, logs=str(e))

                if token.cancelled:
                    if outcome.container_id:
                        await self._teardown(executor, outcome.container_id)
                    token.check()

                if outcome.ok:
                    return self._transition(
                        deployment,
                        DeploymentStatus.RUNNING,
                        container_id=outcome.container_id,
                        image_id=build.image_id,
                        image_tag=build.image_tag,
                        ports=outcome.ports,
                        deploy_url=outcome.url,
                        runtime_logs=outcome.logs,
                    )

                deployment = self._save(deployment, runtime_logs=outcome.logs)
                if outcome.container_id:
                    await self._teardown(executor, outcome.container_id)
                if outcome.fault:
                    parsed = parse_error(outcome.logs, ErrorStage.DEPLOY)
                    raise ResourceFault(parsed.message, category=outcome.fault)
                failure_logs, stage = outcome.logs, ErrorStage.DEPLOY
            else:
                failure_logs, stage = build.logs, ErrorStage.BUILD

            failure = ExecutorFailure(stage.value, failure_logs)
            parsed = parse_error(failure_logs, stage)
            self._publish_error(
                deployment, f"{failure}: {parsed.message}", failure.code
            )
            logger.warning(
                f"Deployment {deployment.id} attempt {deployment.attempt_number} "
                f"{stage.value} failed ({parsed.category.value}): {parsed.message}"
            )

            session = await self._remediate(
                deployment, token, failure_logs, stage, agent_state
            )
            agent_state = session.agent_state

            if session.status == SessionStatus.CANCELLED:
                raise CancelledByOperator(deployment.id)
            if session.error_code == Unfixable.code:
                raise Unfixable(session.error or "Advisor declined to propose a fix")
            if deployment.attempt_number >= deployment.max_attempts:
                raise AttemptsExhausted(
                    deployment.max_attempts, session.error or parsed.message
                )

            token.check()
            deployment = self._transition(
                deployment,
                DeploymentStatus.BUILDING,
                attempt_number=deployment.attempt_number + 1,
            )

    async def _preflight(self, deployment: Deployment) -> BaseExecutor:
        """Validate platform and artifacts; raise ValidationError on failure."""
        if deployment.platform not in ENABLED_PLATFORMS:
            enabled = ", ".join(sorted(p.value for p in ENABLED_PLATFORMS))
            raise ValidationError(
                f"Platform '{deployment.platform.value}' is not enabled",
                [f"Enabled platforms: {enabled}"],
            )
        try:
            executor = self._executor(deployment.platform)
        except DeploymentError as e:
            raise ValidationError(e.message) from e

        try:
            checks = await self._call("preflight", executor.preflight())
        except ExecutorTimeout as e:
            raise ValidationError(str(e)) from e

        failed = [check.message for check in checks if not check.passed]
        try:
            files = await self.artifacts.read(deployment.config_set_id)
        except ArtifactNotFoundError as e:
            raise ValidationError(str(e), failed + [str(e)]) from e

        names = {f.file_name for f in files}
        if not files:
            failed.append("Config set contains no files")
        for required in executor.required_artifacts:
            if required not in names:
                failed.append(f"Required file missing: {required}")

        if failed:
            raise ValidationError(
                f"Pre-flight checks failed: {'; '.join(failed)}", failed
            )
        self._publish_progress(
            deployment, message=f"Pre-flight checks passed ({len(checks)} checks)"
        )
        return executor

    async def _remediate(
        self,
        deployment: Deployment,
        token: CancelToken,
        failure_logs: str,
        stage: ErrorStage,
        agent_state: str | None,
    ) -> Session:
        def on_change(session: Session, changed: dict[str, Any]) -> None:
            self.state.save_session(session)
            self.broadcaster.publish(
                session.id, StreamEvent.progress(session.id, **changed)
            )
            # Session status and error must not overwrite the deployment's own
            relayed = {
                _SESSION_FIELD_ALIASES.get(key, key): value
                for key, value in changed.items()
            }
            self._publish_progress(deployment, session_id=session.id, **relayed)
            if session.status != SessionStatus.ACTIVE:
                self.broadcaster.publish(
                    session.id,
                    StreamEvent.done(session.id, session.status.value, session.error),
                )

        session = RemediationSession(
            deployment=deployment,
            artifacts=self.artifacts,
            advisor=self.advisor,
            registry=self.registry,
            cancel_token=token,
            failure_logs=failure_logs,
            failure_stage=stage,
            agent_state=agent_state,
            advisor_timeout=self.config.advisor_timeout,
            write_timeout=self.config.artifact_write_timeout,
            listener=on_change,
            detached=self._detached,
        )
        return await session.run()

    async def _teardown(self, executor: BaseExecutor, container_id: str) -> None:
        try:
            await self._call("teardown", executor.teardown(container_id))
        except DockPilotError as e:
            logger.warning(f"Failed to remove container {container_id[:12]}: {e}")

    # ------------------------------------------------------------------
    # Persistence and broadcast
    # ------------------------------------------------------------------

    def _transition(
        self, deployment: Deployment, target: DeploymentStatus, **updates: Any
    ) -> Deployment:
        previous = deployment
        deployment = deployment.transition(target, **updates)
        self.state.save_deployment(deployment)
        logger.info(
            f"Deployment {deployment.id}: {previous.status.value} -> "
            f"{deployment.status.value} (attempt {deployment.attempt_number}/"
            f"{deployment.max_attempts})"
        )

        changed: dict[str, Any] = {
            "status": deployment.status.value,
            "progress": deployment.progress,
        }
        if deployment.attempt_number != previous.attempt_number:
            changed["attempt_number"] = deployment.attempt_number
        for key in ("deploy_url", "container_id", "runtime_logs", "error"):
            if key in updates:
                changed[key] = getattr(deployment, key)
        if "ports" in updates:
            changed["ports"] = [p.model_dump() for p in deployment.ports]
        self._publish_progress(deployment, **changed)
        return deployment

    def _save(self, deployment: Deployment, **updates: Any) -> Deployment:
        deployment = deployment.with_updates(**updates)
        self.state.save_deployment(deployment)
        self._publish_progress(deployment, **updates)
        return deployment

    def _publish_progress(self, deployment: Deployment, **fields: Any) -> None:
        if self._topic_closed(deployment):
            return
        self.broadcaster.publish(
            deployment.id, StreamEvent.progress(deployment.id, **fields)
        )

    def _publish_error(self, deployment: Deployment, error: str, code: str) -> None:
        if self._topic_closed(deployment):
            return
        self.broadcaster.publish(
            deployment.id, StreamEvent.error(deployment.id, error, code)
        )

    def _topic_closed(self, deployment: Deployment) -> bool:
        # Health overlay changes after done must not reopen a released topic
        return deployment.is_settled and not self.broadcaster.is_live(deployment.id)

    def _publish_done(self, deployment: Deployment) -> None:
        self.broadcaster.publish(
            deployment.id,
            StreamEvent.done(deployment.id, deployment.status.value, deployment.error),
        )
