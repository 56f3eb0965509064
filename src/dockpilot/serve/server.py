"""DockPilot HTTP server.

Provides the FastAPI application factory and server lifecycle management
for driving deployments over HTTP.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from dockpilot import __version__
from dockpilot.lib.errors import (
    ArtifactConflictError,
    ConfigError,
    DeploymentBusyError,
    DockerNotAvailableError,
    DockPilotError,
    InvalidTransitionError,
    SessionConflictError,
    ValidationError,
)
from dockpilot.lib.logging_config import get_logger
from dockpilot.models.deployment import Deployment, DeploymentStatus
from dockpilot.models.session import Session
from dockpilot.orchestrator import DeploymentOrchestrator
from dockpilot.serve.models import (
    CreateDeploymentRequest,
    ErrorResponse,
    HealthResponse,
    ServerState,
)

logger = get_logger(__name__)

_CONFLICT_ERRORS = (
    DeploymentBusyError,
    InvalidTransitionError,
    SessionConflictError,
    ArtifactConflictError,
)
_UNPROCESSABLE_ERRORS = (ValidationError, ConfigError)


def status_for(error: DockPilotError) -> int:
    """Map a DockPilot error to an HTTP status code."""
    if error.code == "NotFound":
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, _CONFLICT_ERRORS):
        return status.HTTP_409_CONFLICT
    if isinstance(error, _UNPROCESSABLE_ERRORS):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, DockerNotAvailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error_response(status_code: int, error: str, code: str) -> JSONResponse:
    body = ErrorResponse(error=error, code=code)
    return JSONResponse(status_code=status_code, content=body.model_dump())


class DeploymentServer:
    """HTTP server wrapping a DeploymentOrchestrator.

    Attributes:
        orchestrator: Orchestrator that runs the deployments.
        host: The hostname to bind to.
        port: The port to listen on.
        state: The current server state.
    """

    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        host: str = "127.0.0.1",
        port: int = 8400,
        cors_origins: list[str] | None = None,
    ) -> None:
        """Initialize the deployment server.

        Args:
            orchestrator: Orchestrator that runs the deployments.
            host: The hostname to bind to (default: 127.0.0.1).
                  Use 0.0.0.0 to expose to all network interfaces.
            port: The port to listen on (default: 8400).
            cors_origins: List of allowed CORS origins (default: ["*"]).
        """
        self.orchestrator = orchestrator
        self.host = host
        self.port = port
        self.cors_origins = cors_origins or ["*"]

        if host == "0.0.0.0":  # noqa: S104
            logger.warning(
                "Server binding to 0.0.0.0 exposes it to all network interfaces. "
                "Use 127.0.0.1 for local-only access."
            )

        self.state = ServerState.INITIALIZING
        self._app: FastAPI | None = None
        self._start_time: datetime | None = None

    @property
    def uptime_seconds(self) -> float:
        """Return server uptime in seconds."""
        if self._start_time is None:
            return 0.0
        return (datetime.now(timezone.utc) - self._start_time).total_seconds()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        await self.start()
        try:
            yield
        finally:
            await self.stop()

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application.

        Returns:
            Configured FastAPI application instance.
        """
        app = FastAPI(
            title="DockPilot",
            description="Deployment orchestration with AI-assisted remediation",
            version=__version__,
            lifespan=self._lifespan,
        )
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._register_error_handlers(app)
        self._register_health_endpoints(app)
        self._register_deployment_endpoints(app)
        self._register_stream_endpoints(app)

        self._app = app
        self.state = ServerState.READY
        logger.info("FastAPI app created for DockPilot")
        return app

    def _register_error_handlers(self, app: FastAPI) -> None:
        @app.exception_handler(DockPilotError)
        async def handle_dockpilot_error(
            request: Request, exc: DockPilotError
        ) -> JSONResponse:
            status_code = status_for(exc)
            if status_code >= 500:
                logger.error(
                    f"{request.method} {request.url.path} failed: {exc}", exc_info=exc
                )
            return _error_response(status_code, str(exc), exc.code)

        @app.exception_handler(RequestValidationError)
        async def handle_request_validation(
            request: Request, exc: RequestValidationError
        ) -> JSONResponse:
            messages = [
                f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
                for err in exc.errors()
            ]
            return _error_response(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "; ".join(messages) or "Invalid request",
                ValidationError.code,
            )

    def _register_health_endpoints(self, app: FastAPI) -> None:
        @app.get("/health", response_model=HealthResponse, tags=["Health"])
        async def health() -> HealthResponse:
            """Basic health check endpoint."""
            active = sum(
                1
                for d in self.orchestrator.list_deployments()
                if self.orchestrator.is_running(d.id)
            )
            return HealthResponse(
                status="healthy",
                active_deployments=active,
                uptime_seconds=self.uptime_seconds,
            )

    def _register_deployment_endpoints(self, app: FastAPI) -> None:
        orchestrator = self.orchestrator

        @app.post(
            "/deployments",
            response_model=Deployment,
            status_code=status.HTTP_201_CREATED,
            tags=["Deployments"],
        )
        async def create_deployment(body: CreateDeploymentRequest) -> Deployment:
            """Create a deployment and start running it."""
            options = body.model_dump(exclude={"config_set_id"})
            return await orchestrator.deploy(body.config_set_id, **options)

        @app.get(
            "/deployments", response_model=list[Deployment], tags=["Deployments"]
        )
        async def list_deployments(
            config_set_id: str | None = None,
            status_filter: DeploymentStatus | None = Query(  # noqa: B008
                default=None, alias="status"
            ),
        ) -> list[Deployment]:
            """List deployments, newest first."""
            return orchestrator.list_deployments(
                config_set_id=config_set_id, status=status_filter
            )

        @app.get(
            "/deployments/{deployment_id}",
            response_model=Deployment,
            tags=["Deployments"],
        )
        async def get_deployment(deployment_id: str) -> Deployment:
            """Return a deployment record."""
            return orchestrator.get_deployment(deployment_id)

        @app.get(
            "/deployments/{deployment_id}/sessions",
            response_model=list[Session],
            tags=["Deployments"],
        )
        async def list_sessions(deployment_id: str) -> list[Session]:
            """Return a deployment's remediation sessions ordered by attempt."""
            return orchestrator.list_sessions(deployment_id)

        @app.post(
            "/deployments/{deployment_id}/cancel",
            response_model=Deployment,
            status_code=status.HTTP_202_ACCEPTED,
            tags=["Deployments"],
        )
        async def cancel_deployment(deployment_id: str) -> Deployment:
            """Request cancellation of a deployment."""
            return await orchestrator.cancel(deployment_id)

        @app.post(
            "/deployments/{deployment_id}/health",
            response_model=Deployment,
            tags=["Deployments"],
        )
        async def probe_deployment(deployment_id: str) -> Deployment:
            """Probe a running deployment and update its health overlay."""
            return await orchestrator.check_health(deployment_id)

    def _register_stream_endpoints(self, app: FastAPI) -> None:
        orchestrator = self.orchestrator

        def _stream(topic: str) -> StreamingResponse:
            subscription = orchestrator.subscribe(topic)

            async def events() -> AsyncIterator[str]:
                try:
                    async for event in subscription:
                        yield event.to_sse()
                finally:
                    subscription.close()

            return StreamingResponse(
                events(),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        @app.get("/deployments/{deployment_id}/events", tags=["Events"])
        async def deployment_events(deployment_id: str) -> StreamingResponse:
            """Stream deployment progress as Server-Sent Events."""
            orchestrator.get_deployment(deployment_id)
            return _stream(deployment_id)

        @app.get("/sessions/{session_id}/events", tags=["Events"])
        async def session_events(session_id: str) -> Response:
            """Stream remediation session progress as Server-Sent Events."""
            if orchestrator.state.get_session(session_id) is None:
                return _error_response(
                    status.HTTP_404_NOT_FOUND,
                    f"Session not found: {session_id}",
                    "NotFound",
                )
            return _stream(session_id)

    async def start(self) -> None:
        """Start the server and recover deployments left in flight."""
        if self._app is None:
            self.create_app()
        self._start_time = datetime.now(timezone.utc)
        recovered = self.orchestrator.recover_interrupted()
        self.state = ServerState.RUNNING
        logger.info(
            f"DockPilot server started at http://{self.host}:{self.port} "
            f"({len(recovered)} interrupted deployments marked failed)"
        )

    async def stop(self) -> None:
        """Stop the server, cancelling running deployments."""
        self.state = ServerState.SHUTTING_DOWN
        await self.orchestrator.shutdown()
        self.state = ServerState.STOPPED
        logger.info("DockPilot server stopped")


def create_app(
    orchestrator: DeploymentOrchestrator,
    host: str = "127.0.0.1",
    port: int = 8400,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create a FastAPI app serving an orchestrator."""
    server = DeploymentServer(
        orchestrator, host=host, port=port, cors_origins=cors_origins
    )
    return server.create_app()
