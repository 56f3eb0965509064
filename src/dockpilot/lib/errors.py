"""Custom exception hierarchy for DockPilot deployments and remediation."""

from __future__ import annotations


class DockPilotError(Exception):
    """Base exception for all DockPilot errors.

    All DockPilot-specific exceptions inherit from this class, enabling
    centralized exception handling. Each subclass carries a ``code`` that is
    stored on deployment and session records as the machine-readable cause.
    """

    code = "DockPilotError"


class ConfigError(DockPilotError):
    """Exception raised for configuration errors.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    code = "ConfigError"

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class DeploymentError(DockPilotError):
    """Exception raised when a deployment operation fails.

    Attributes:
        operation: The operation that failed (build, deploy, state, ...)
        message: Human-readable error message
    """

    code = "DeploymentError"

    def __init__(self, operation: str, message: str) -> None:
        """Create a deployment error for an operation."""
        self.operation = operation
        self.message = message
        super().__init__(f"Deployment {operation} failed: {message}")


class DockerNotAvailableError(DeploymentError):
    """Exception raised when the Docker daemon cannot be reached."""

    code = "DockerNotAvailable"

    def __init__(self, operation: str = "init") -> None:
        """Create an error explaining how to make Docker available."""
        super().__init__(
            operation=operation,
            message=(
                "Docker daemon is not available. "
                "Start Docker Desktop or run 'sudo systemctl start docker'."
            ),
        )


class DeploymentNotFoundError(DockPilotError):
    """Exception raised when a deployment id is unknown."""

    code = "NotFound"

    def __init__(self, deployment_id: str) -> None:
        """Create a not-found error for a deployment id."""
        self.deployment_id = deployment_id
        super().__init__(f"Deployment not found: {deployment_id}")


class DeploymentBusyError(DockPilotError):
    """Exception raised when a deployment is already being executed."""

    code = "DeploymentBusy"

    def __init__(self, deployment_id: str) -> None:
        """Create a busy error for a deployment id."""
        self.deployment_id = deployment_id
        super().__init__(f"Deployment {deployment_id} is already running")


class InvalidTransitionError(DockPilotError):
    """Exception raised for a status change the state machine forbids."""

    code = "InvalidTransition"

    def __init__(self, entity: str, current: str, target: str) -> None:
        """Create an invalid transition error."""
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'")


class ValidationError(DockPilotError):
    """Exception raised when pre-flight validation rejects a deployment.

    Pre-flight rejections are never retried and never start a session.

    Attributes:
        message: Summary of the failed checks
        checks: Messages of the individual checks that failed
    """

    code = "ValidationError"

    def __init__(self, message: str, checks: list[str] | None = None) -> None:
        """Create a validation error with the failed check messages."""
        self.message = message
        self.checks = checks or []
        super().__init__(message)


class ExecutorFailure(DockPilotError):
    """Exception raised when a build or deploy step fails.

    Attributes:
        stage: Stage that failed ("build" or "deploy")
        logs: Output captured from the failing step
    """

    code = "ExecutorFailure"

    def __init__(self, stage: str, logs: str) -> None:
        """Create an executor failure for a stage."""
        self.stage = stage
        self.logs = logs
        super().__init__(f"{stage.capitalize()} failed")


class ResourceFault(DockPilotError):
    """Exception raised for an unrecoverable deploy-time resource fault.

    Resource faults (port exhaustion, full disk, out of memory) skip
    remediation and fail the deployment immediately.
    """

    code = "ResourceFault"

    def __init__(self, message: str, category: str = "unknown") -> None:
        """Create a resource fault with its error category."""
        self.message = message
        self.category = category
        super().__init__(message)


class OperationTimeout(DockPilotError):
    """Base class for per-call timeouts at suspension points.

    Attributes:
        operation: The call that timed out
        timeout: The configured ceiling in seconds
    """

    code = "Timeout"

    def __init__(self, operation: str, timeout: float) -> None:
        """Create a timeout error for an operation."""
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s")


class ExecutorTimeout(OperationTimeout):
    """A build, deploy or health call exceeded its ceiling."""

    code = "ExecutorTimeout"


class AdvisorTimeout(OperationTimeout):
    """The remediation advisor exceeded its ceiling."""

    code = "AdvisorTimeout"


class ArtifactStoreTimeout(OperationTimeout):
    """An artifact store write exceeded its ceiling."""

    code = "ArtifactStoreTimeout"


class ArtifactStoreError(DockPilotError):
    """Base class for artifact store failures."""

    code = "ArtifactStoreError"


class ArtifactNotFoundError(ArtifactStoreError):
    """Exception raised when a config set is unknown to the store."""

    code = "NotFound"

    def __init__(self, config_set_id: str) -> None:
        """Create a not-found error for a config set."""
        self.config_set_id = config_set_id
        super().__init__(f"Config set not found: {config_set_id}")


class ArtifactConflictError(ArtifactStoreError):
    """Exception raised when an optimistic revision check fails.

    Attributes:
        config_set_id: Config set being written
        file_name: File being written
        expected: Revision the writer expected (None for "must not exist")
        actual: Current head revision (None when the file does not exist)
    """

    code = "Conflict"

    def __init__(
        self,
        config_set_id: str,
        file_name: str,
        expected: str | None,
        actual: str | None,
    ) -> None:
        """Create a conflict error describing both revisions."""
        self.config_set_id = config_set_id
        self.file_name = file_name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Revision conflict on {config_set_id}/{file_name}: "
            f"expected {expected or 'no file'}, found {actual or 'no file'}"
        )


class SessionFailure(DockPilotError):
    """Base class for reasons a remediation session terminates as failed."""

    code = "SessionFailure"

    def __init__(self, message: str) -> None:
        """Create a session failure with a human-readable message."""
        self.message = message
        super().__init__(message)


class Unfixable(SessionFailure):
    """The advisor explicitly declined to propose a fix."""

    code = "Unfixable"


class ArtifactConflict(SessionFailure):
    """A concurrent writer changed an artifact while edits were applied."""

    code = "ArtifactConflict"


class AdvisorError(SessionFailure):
    """The advisor raised an unexpected error or returned an invalid proposal."""

    code = "AdvisorError"


class AttemptsExhausted(DockPilotError):
    """Exception raised when the attempt budget is used up without success."""

    code = "AttemptsExhausted"

    def __init__(self, attempts: int, last_error: str | None) -> None:
        """Create an exhaustion error carrying the last session error."""
        self.attempts = attempts
        self.last_error = last_error
        message = f"Deployment failed after {attempts} attempt(s)"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)


class SessionConflictError(DockPilotError):
    """Exception raised when a second session would become active."""

    code = "SessionConflict"

    def __init__(self, deployment_id: str, active_session_id: str) -> None:
        """Create a conflict error naming the session already active."""
        self.deployment_id = deployment_id
        self.active_session_id = active_session_id
        super().__init__(
            f"Deployment {deployment_id} already has active session "
            f"{active_session_id}"
        )


class CancelledByOperator(DockPilotError):
    """Raised at a suspension point once cancellation has been requested."""

    code = "CancelledByOperator"

    def __init__(self, deployment_id: str) -> None:
        """Create a cancellation marker for a deployment."""
        self.deployment_id = deployment_id
        super().__init__("Deployment cancelled by operator")
