"""Remediation session state machine.

A session is single-shot: ``active -> completed | failed | cancelled``. It
reads the current artifacts, asks the advisor for a proposal, records the
advisor's activity and applies the proposed edits with optimistic revision
checks.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from dockpilot.deploy.artifacts import ArtifactStore
from dockpilot.deploy.error_parser import ErrorStage, analyze_error
from dockpilot.lib.errors import (
    AdvisorError,
    AdvisorTimeout,
    ArtifactConflict,
    ArtifactConflictError,
    ArtifactStoreTimeout,
    CancelledByOperator,
    DockPilotError,
    Unfixable,
)
from dockpilot.lib.logging_config import get_logger
from dockpilot.models.deployment import Deployment
from dockpilot.models.remediation import (
    RemediationProposal,
    RemediationRequest,
    ToolInvocation,
)
from dockpilot.models.session import (
    ActivityEntry,
    ActivityType,
    FileChange,
    Session,
    SessionStatus,
)
from dockpilot.orchestrator.tokens import CancelToken, ExecutionTokenRegistry
from dockpilot.remediation.advisor import BaseAdvisor

logger = get_logger(__name__)

SessionListener = Callable[[Session, dict[str, Any]], None]


def _dump(items: tuple[Any, ...]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


class RemediationSession:
    """Runs one remediation attempt for a failed build or deploy.

    Args:
        deployment: Deployment snapshot at the time of the failure.
        artifacts: Store holding the deployment's config set.
        advisor: Advisor asked for a proposal.
        registry: Registry enforcing one active session per deployment.
        cancel_token: Cancellation flag of the deployment run.
        failure_logs: Output of the failed step.
        failure_stage: Stage that failed.
        agent_state: Opaque token from the previous session, if any.
        advisor_timeout: Ceiling in seconds for the advisor call.
        write_timeout: Ceiling in seconds for each artifact write.
        listener: Called with the new snapshot and the changed fields after
            every change.
        detached: Set that keeps advisor calls outliving a cancelled session
            alive until they finish. A private set is used when omitted.
    """

    def __init__(
        self,
        *,
        deployment: Deployment,
        artifacts: ArtifactStore,
        advisor: BaseAdvisor,
        registry: ExecutionTokenRegistry,
        cancel_token: CancelToken,
        failure_logs: str,
        failure_stage: ErrorStage = ErrorStage.BUILD,
        agent_state: str | None = None,
        advisor_timeout: float = 600.0,
        write_timeout: float = 30.0,
        listener: SessionListener | None = None,
        detached: set[asyncio.Future[Any]] | None = None,
    ) -> None:
        self.deployment = deployment
        self.artifacts = artifacts
        self.advisor = advisor
        self.registry = registry
        self.cancel_token = cancel_token
        self.failure_logs = failure_logs
        self.failure_stage = failure_stage
        self.advisor_timeout = advisor_timeout
        self.write_timeout = write_timeout
        self._listener = listener
        self.detached: set[asyncio.Future[Any]] = (
            detached if detached is not None else set()
        )
        self._accepting_activity = False
        self.session = Session(
            deployment_id=deployment.id,
            attempt_number=deployment.attempt_number,
            custom_instructions=deployment.custom_instructions,
            agent_state=agent_state,
            build_logs=failure_logs,
        )

    def _update(self, session: Session, **changed: Any) -> None:
        self.session = session
        if self._listener is not None:
            self._listener(session, changed)

    def _record(self, invocation: ToolInvocation) -> None:
        entry = ActivityEntry(
            type=invocation.type,
            action=invocation.action,
            input=invocation.input,
            output=invocation.output,
        )
        session = self.session.with_activity(entry)
        self._update(session, activity_log=_dump(session.activity_log))

    def report(self, invocation: ToolInvocation) -> None:
        """Activity callback handed to the advisor.

        Reports arriving after the session stopped listening (cancelled or
        finished) are dropped.
        """
        if not self._accepting_activity or self.cancel_token.cancelled:
            logger.debug(
                f"Dropping late advisor activity '{invocation.action}' for "
                f"session {self.session.id}"
            )
            return
        self._record(invocation)

    async def run(self) -> Session:
        """Run the session to a final status and return the final snapshot."""
        deployment_id = self.deployment.id
        with self.registry.hold(deployment_id, self.session.id):
            self._update(self.session, status=self.session.status.value)
            logger.info(
                f"Session {self.session.id} started for deployment "
                f"{deployment_id} (attempt {self.session.attempt_number})"
            )
            try:
                summary = await self._remediate()
            except CancelledByOperator:
                self._finish(SessionStatus.CANCELLED, error="Cancelled by operator")
            except ArtifactConflictError as e:
                # Never retried; the next session starts from the new heads
                self._fail(ArtifactConflict(str(e)))
            except DockPilotError as e:
                self._fail(e)
            else:
                self._finish(SessionStatus.COMPLETED, summary=summary)
            finally:
                self._accepting_activity = False
        return self.session

    def _fail(self, error: DockPilotError) -> None:
        self._record(
            ToolInvocation(
                type=ActivityType.ERROR, action=error.code, output=str(error)
            )
        )
        self._finish(SessionStatus.FAILED, error=str(error), error_code=error.code)

    def _finish(
        self,
        status: SessionStatus,
        *,
        error: str | None = None,
        error_code: str | None = None,
        summary: str | None = None,
    ) -> None:
        session = self.session.finish(
            status, error=error, error_code=error_code, summary=summary
        )
        changed: dict[str, Any] = {"status": status.value}
        if error:
            changed["error"] = error
        self._update(session, **changed)
        if status == SessionStatus.COMPLETED:
            logger.info(f"Session {session.id} completed: {summary}")
        else:
            logger.warning(f"Session {session.id} {status.value}: {error}")

    async def _remediate(self) -> str:
        config_set_id = self.deployment.config_set_id
        self.cancel_token.check()
        heads = {f.file_name: f for f in await self.artifacts.read(config_set_id)}
        analysis = analyze_error(self.failure_logs, self.failure_stage)

        request = RemediationRequest(
            deployment_id=self.deployment.id,
            session_id=self.session.id,
            attempt_number=self.session.attempt_number,
            max_attempts=self.deployment.max_attempts,
            logs=self.failure_logs,
            error_analysis=analysis.model_dump(mode="json"),
            files={name: f.content for name, f in heads.items()},
            hint=self.session.custom_instructions,
            agent_state=self.session.agent_state,
        )
        proposal = await self._ask_advisor(request)
        self.cancel_token.check()

        for invocation in proposal.activity:
            self._record(invocation)
        self.session = self.session.model_copy(
            update={"agent_state": proposal.agent_state}
        )

        if proposal.unfixable:
            raise Unfixable(proposal.rationale or "Advisor declined to propose a fix")

        # Each file is guarded by the revision it had when the session began;
        # later edits to the same file are guarded by this session's own write
        expected: dict[str, str | None] = {
            name: f.revision for name, f in heads.items()
        }
        current: dict[str, str] = {name: f.content for name, f in heads.items()}
        for edit in proposal.edits:
            self.cancel_token.check()
            revision = expected.get(edit.file)
            try:
                result = await asyncio.wait_for(
                    self.artifacts.write(
                        config_set_id,
                        edit.file,
                        edit.content,
                        if_match=revision,
                        if_absent=revision is None,
                    ),
                    self.write_timeout,
                )
            except asyncio.TimeoutError as e:
                raise ArtifactStoreTimeout(
                    f"write {edit.file}", self.write_timeout
                ) from e

            change = FileChange(
                file=edit.file,
                before=current.get(edit.file),
                after=result.content,
                reason=edit.reason,
            )
            expected[edit.file] = result.revision
            current[edit.file] = result.content
            session = self.session.with_file_change(change)
            self._update(session, file_changes=_dump(session.file_changes))
            logger.info(f"Applied edit to {edit.file}: {edit.reason}")

        if not proposal.edits:
            return proposal.rationale or "Advisor proposed no edits"
        return proposal.rationale or f"Applied {len(proposal.edits)} edit(s)"

    async def _ask_advisor(self, request: RemediationRequest) -> RemediationProposal:
        """Call the advisor, racing it against cancellation and its timeout."""
        self._accepting_activity = True
        advice = asyncio.ensure_future(self.advisor.propose(request, self.report))
        cancelled = asyncio.ensure_future(self.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {advice, cancelled},
                timeout=self.advisor_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
            self._accepting_activity = False

        if advice not in done:
            if cancelled in done:
                # The call runs to completion; its result is discarded
                self.detached.add(advice)
                advice.add_done_callback(self._discard_late_advice)
                raise CancelledByOperator(self.deployment.id)
            advice.cancel()
            raise AdvisorTimeout("advisor", self.advisor_timeout)

        try:
            proposal = advice.result()
        except DockPilotError:
            raise
        except Exception as e:
            logger.warning(f"Advisor raised {type(e).__name__}: {e}", exc_info=True)
            raise AdvisorError(f"Advisor failed: {e}") from e

        if not isinstance(proposal, RemediationProposal):
            raise AdvisorError(
                f"Advisor returned {type(proposal).__name__}, not a proposal"
            )
        return proposal

    def _discard_late_advice(self, advice: asyncio.Future[Any]) -> None:
        self.detached.discard(advice)
        if advice.cancelled():
            return
        error = advice.exception()
        if error is not None:
            logger.warning(
                f"Advisor failed after session {self.session.id} was cancelled: "
                f"{type(error).__name__}: {error}"
            )
        else:
            logger.info(
                f"Discarded advisor result for cancelled session {self.session.id}"
            )
