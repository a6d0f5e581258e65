"""CloudDeck HTTP server.

Provides the FastAPI application factory and server lifecycle management
for exposing the deployment engine over HTTP. Authentication happens in
front of this service; the caller identity arrives in the ``X-User-Id``
header and is only attached to records.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from clouddeck.deploy.registry import AdapterRegistry
from clouddeck.deploy.services import DeploymentServices
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.build import Build, BuildStatus, LogEntry
from clouddeck.models.config import PlatformConfig
from clouddeck.models.deployment import (
    ConnectResult,
    Deployment,
    DeploymentLogs,
    DeploymentResult,
    DeploymentStatus,
    DeploymentTrigger,
    DisconnectResult,
    Environment,
)
from clouddeck.models.events import AuditFact, DomainEvent, WebhookAck, WebhookFailure
from clouddeck.serve.middleware import (
    ErrorHandlingMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)
from clouddeck.serve.models import (
    ConnectProviderRequest,
    CreateDeploymentRequest,
    DisconnectProviderRequest,
    HealthResponse,
    Page,
    PromoteRequest,
    RollbackRequest,
    ServerState,
)

logger = get_logger(__name__)


class DeploymentServer:
    """HTTP server for the CloudDeck deployment engine.

    Attributes:
        config: Platform configuration
        services: The wired deployment engine
        host: The hostname to bind to
        port: The port to listen on
        state: The current server state
    """

    def __init__(
        self,
        config: PlatformConfig,
        host: str = "127.0.0.1",
        port: int = 8000,
        cors_origins: list[str] | None = None,
        debug: bool = False,
        services: DeploymentServices | None = None,
    ) -> None:
        """Initialize the deployment server.

        Args:
            config: Platform configuration
            host: The hostname to bind to (default: 127.0.0.1 for security).
                  Use 0.0.0.0 to expose to all network interfaces.
            port: The port to listen on (default: 8000)
            cors_origins: List of allowed CORS origins (default: ["*"])
            debug: Include exception details in 500 responses
            services: Pre-built engine (built from ``config`` if omitted)
        """
        self.config = config
        self.host = host
        self.port = port
        self.cors_origins = cors_origins or ["*"]
        self.debug = debug

        if host == "0.0.0.0":  # noqa: S104
            logger.warning(
                "Server binding to 0.0.0.0 exposes it to all network interfaces. "
                "Use 127.0.0.1 for local-only access."
            )

        self.services = services or DeploymentServices.from_config(config)
        self.state = ServerState.INITIALIZING
        self._app: FastAPI | None = None
        self._start_time: datetime | None = None

    @property
    def is_ready(self) -> bool:
        """Check if the server is ready to accept requests."""
        return self.state in (ServerState.READY, ServerState.RUNNING)

    @property
    def uptime_seconds(self) -> float:
        """Return server uptime in seconds."""
        if self._start_time is None:
            return 0.0
        delta = datetime.now(timezone.utc) - self._start_time
        return delta.total_seconds()

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application.

        Returns:
            Configured FastAPI application instance.
        """
        app = FastAPI(
            title="CloudDeck",
            description="Multi-cloud deployment orchestration API",
            version="0.1.0",
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        # Starlette runs middleware in reverse order of addition:
        # Logging -> ErrorHandling -> CORS -> handler
        app.add_middleware(ErrorHandlingMiddleware, debug=self.debug)
        app.add_middleware(LoggingMiddleware, debug=self.debug)
        register_exception_handlers(app)

        self._register_health_endpoints(app)
        self._register_provider_endpoints(app)
        self._register_deployment_endpoints(app)
        self._register_build_endpoints(app)
        self._register_webhook_endpoints(app)

        self._app = app
        self.state = ServerState.READY
        logger.info(
            f"FastAPI app created with {len(self.services.catalog.all())} project(s)"
        )
        return app

    def _register_health_endpoints(self, app: FastAPI) -> None:
        @app.get("/health", response_model=HealthResponse, tags=["Health"])
        async def health() -> HealthResponse:
            """Basic health check endpoint."""
            return HealthResponse(
                status="healthy" if self.is_ready else "unhealthy",
                ready=self.is_ready,
                projects=len(self.services.catalog.all()),
                active_builds=len(self.services.pipeline.processes),
                uptime_seconds=self.uptime_seconds,
            )

        @app.get("/ready", tags=["Health"])
        async def ready() -> dict[str, bool]:
            """Readiness check endpoint for orchestrators."""
            return {"ready": self.is_ready}

    def _register_provider_endpoints(self, app: FastAPI) -> None:
        orchestrator = self.services.orchestrator

        @app.get("/providers", tags=["Providers"])
        def list_providers() -> dict[str, list[str]]:
            """List supported hosting providers."""
            return {"providers": AdapterRegistry.supported_providers()}

        @app.post(
            "/providers/{provider}/connect",
            response_model=ConnectResult,
            tags=["Providers"],
        )
        def connect_provider(
            provider: str,
            body: ConnectProviderRequest,
            x_user_id: str | None = Header(default=None),
        ) -> ConnectResult:
            """Verify provider credentials."""
            return orchestrator.connect_provider(provider, body.credentials, x_user_id)

        @app.post(
            "/providers/{provider}/disconnect",
            response_model=DisconnectResult,
            tags=["Providers"],
        )
        def disconnect_provider(
            provider: str,
            body: DisconnectProviderRequest,
            x_user_id: str | None = Header(default=None),
        ) -> DisconnectResult:
            """Disconnect a provider account."""
            return orchestrator.disconnect_provider(
                provider, body.account_id, x_user_id
            )

        @app.get(
            "/providers/{provider}/deployments",
            response_model=list[DeploymentResult],
            tags=["Providers"],
        )
        def list_provider_deployments(
            provider: str,
            project_ref: str,
            limit: int = Query(default=10, ge=1, le=100),
            offset: int = Query(default=0, ge=0),
            status: DeploymentStatus | None = None,
        ) -> list[DeploymentResult]:
            """List deployments as the provider reports them."""
            return orchestrator.list_provider_deployments(
                provider, project_ref, limit=limit, offset=offset, status=status
            )

    def _register_deployment_endpoints(self, app: FastAPI) -> None:
        orchestrator = self.services.orchestrator
        sink = self.services.sink

        @app.post(
            "/deployments",
            response_model=Deployment,
            status_code=202,
            tags=["Deployments"],
        )
        def create_deployment(
            body: CreateDeploymentRequest,
            x_user_id: str | None = Header(default=None),
        ) -> Deployment:
            """Start a deployment; returns before the build runs."""
            return orchestrator.deploy(
                body.project_id,
                environment=body.environment,
                provider=body.provider,
                branch=body.branch,
                commit_sha=body.commit_sha,
                config=body.config,
                trigger=DeploymentTrigger.API,
                user_id=x_user_id,
                git_author=body.git_author,
                commit_message=body.commit_message,
                canary_percentage=body.canary_percentage,
            )

        @app.get(
            "/deployments", response_model=Page[Deployment], tags=["Deployments"]
        )
        def list_deployments(
            project_id: str | None = None,
            environment: Environment | None = None,
            status: DeploymentStatus | None = None,
            provider: str | None = None,
            limit: int = Query(default=20, ge=1, le=100),
            offset: int = Query(default=0, ge=0),
        ) -> Page[Deployment]:
            """List deployments newest first."""
            items, total = orchestrator.list_deployments(
                project_id=project_id,
                environment=environment,
                status=status,
                provider=provider,
                limit=limit,
                offset=offset,
            )
            return Page[Deployment](
                items=items, total=total, limit=limit, offset=offset
            )

        @app.get(
            "/deployments/{deployment_id}",
            response_model=Deployment,
            tags=["Deployments"],
        )
        def get_deployment(deployment_id: str) -> Deployment:
            """Return one deployment."""
            return orchestrator.get(deployment_id)

        @app.post(
            "/deployments/{deployment_id}/cancel",
            response_model=Deployment,
            tags=["Deployments"],
        )
        def cancel_deployment(
            deployment_id: str, x_user_id: str | None = Header(default=None)
        ) -> Deployment:
            """Cancel an unfinished deployment."""
            return orchestrator.cancel(deployment_id, user_id=x_user_id)

        @app.post(
            "/deployments/{deployment_id}/rollback",
            response_model=Deployment,
            status_code=202,
            tags=["Deployments"],
        )
        def rollback_deployment(
            deployment_id: str,
            body: RollbackRequest | None = None,
            x_user_id: str | None = Header(default=None),
        ) -> Deployment:
            """Redeploy this deployment's content as a new deployment."""
            reason = body.reason if body else None
            return orchestrator.rollback(
                deployment_id, reason=reason, user_id=x_user_id
            )

        @app.post(
            "/deployments/{deployment_id}/promote",
            response_model=Deployment,
            status_code=202,
            tags=["Deployments"],
        )
        def promote_deployment(
            deployment_id: str,
            body: PromoteRequest,
            x_user_id: str | None = Header(default=None),
        ) -> Deployment:
            """Deploy this deployment's build into another environment."""
            return orchestrator.promote(
                deployment_id, body.target_environment, user_id=x_user_id
            )

        @app.post(
            "/deployments/{deployment_id}/refresh",
            response_model=Deployment,
            tags=["Deployments"],
        )
        def refresh_deployment(deployment_id: str) -> Deployment:
            """Reconcile status from the provider."""
            return orchestrator.refresh_status(deployment_id)

        @app.get(
            "/deployments/{deployment_id}/logs",
            response_model=DeploymentLogs,
            tags=["Deployments"],
        )
        def deployment_logs(
            deployment_id: str,
            limit: int = Query(default=50, ge=1, le=1000),
            offset: int = Query(default=0, ge=0),
        ) -> DeploymentLogs:
            """Return provider-side deployment logs."""
            return orchestrator.get_provider_logs(
                deployment_id, limit=limit, offset=offset
            )

        @app.get(
            "/projects/{project_id}/environments/{environment}",
            tags=["Deployments"],
        )
        def environment_status(
            project_id: str, environment: Environment
        ) -> dict[str, Any]:
            """Summarize what an environment is serving."""
            self.services.catalog.get(project_id)
            return orchestrator.environment_status(project_id, environment)

        @app.get("/projects/{project_id}/stats", tags=["Deployments"])
        def project_stats(
            project_id: str, days: int = Query(default=30, ge=1, le=365)
        ) -> dict[str, Any]:
            """Deployment and build statistics for a project."""
            self.services.catalog.get(project_id)
            return orchestrator.stats(project_id, days=days)

        @app.get("/events", response_model=list[DomainEvent], tags=["Events"])
        def list_events(
            limit: int = Query(default=100, ge=1, le=1000),
        ) -> list[DomainEvent]:
            """Recently emitted domain events, newest first."""
            return list(reversed(sink.events))[:limit]

        @app.get("/audit", response_model=list[AuditFact], tags=["Events"])
        def list_audit(
            limit: int = Query(default=100, ge=1, le=1000),
        ) -> list[AuditFact]:
            """Recently emitted audit facts, newest first."""
            return list(reversed(sink.audit_facts))[:limit]

    def _register_build_endpoints(self, app: FastAPI) -> None:
        store = self.services.store
        pipeline = self.services.pipeline

        @app.get("/builds", response_model=Page[Build], tags=["Builds"])
        def list_builds(
            project_id: str | None = None,
            status: BuildStatus | None = None,
            branch: str | None = None,
            limit: int = Query(default=20, ge=1, le=100),
            offset: int = Query(default=0, ge=0),
        ) -> Page[Build]:
            """List builds newest first."""
            items, total = store.list_builds(
                project_id=project_id,
                status=status,
                branch=branch,
                limit=limit,
                offset=offset,
            )
            return Page[Build](items=items, total=total, limit=limit, offset=offset)

        @app.get("/builds/{build_id}", response_model=Build, tags=["Builds"])
        def get_build(build_id: str) -> Build:
            """Return one build."""
            return store.get_build(build_id)

        @app.get(
            "/builds/{build_id}/logs", response_model=Page[LogEntry], tags=["Builds"]
        )
        def build_logs(
            build_id: str,
            limit: int = Query(default=100, ge=1, le=5000),
            offset: int = Query(default=0, ge=0),
        ) -> Page[LogEntry]:
            """Return a page of a build's log lines."""
            logs = store.get_build(build_id).logs
            return Page[LogEntry](
                items=logs[offset : offset + limit],
                total=len(logs),
                limit=limit,
                offset=offset,
            )

        @app.post("/builds/{build_id}/cancel", response_model=Build, tags=["Builds"])
        def cancel_build(build_id: str) -> Build:
            """Cancel a running build."""
            return pipeline.cancel_build(build_id)

        @app.post(
            "/builds/{build_id}/retry",
            response_model=Build,
            status_code=202,
            tags=["Builds"],
        )
        def retry_build(
            build_id: str, x_user_id: str | None = Header(default=None)
        ) -> Build:
            """Re-run a finished build as a new build."""
            build = pipeline.retry_build(build_id, user_id=x_user_id)
            pipeline.start(build.id)
            return build

    def _register_webhook_endpoints(self, app: FastAPI) -> None:
        webhooks = self.services.webhooks
        store = self.services.store

        @app.post(
            "/webhooks/providers/{provider}",
            response_model=WebhookAck,
            tags=["Webhooks"],
        )
        async def provider_webhook(provider: str, request: Request) -> WebhookAck:
            """Receive a hosting provider status callback."""
            body = await request.body()
            return await run_in_threadpool(
                webhooks.handle_provider_webhook, provider, body, dict(request.headers)
            )

        @app.post(
            "/webhooks/git/{provider}/{project_id}",
            response_model=WebhookAck,
            tags=["Webhooks"],
        )
        async def git_webhook(
            provider: str, project_id: str, request: Request
        ) -> WebhookAck:
            """Receive a git push or pull request event."""
            body = await request.body()
            return await run_in_threadpool(
                webhooks.handle_git_webhook,
                provider,
                project_id,
                body,
                dict(request.headers),
            )

        @app.get(
            "/webhooks/failures",
            response_model=list[WebhookFailure],
            tags=["Webhooks"],
        )
        def webhook_failures(
            limit: int = Query(default=50, ge=1, le=500),
        ) -> list[WebhookFailure]:
            """Webhooks that were acknowledged but not applied."""
            return store.list_webhook_failures(limit)

    async def start(self) -> None:
        """Mark the server as running."""
        if self._app is None:
            self.create_app()
        self._start_time = datetime.now(timezone.utc)
        self.state = ServerState.RUNNING
        logger.info(f"CloudDeck server started at http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop background work gracefully."""
        self.state = ServerState.SHUTTING_DOWN
        await run_in_threadpool(self.services.shutdown)
        self.state = ServerState.STOPPED
        logger.info("CloudDeck server stopped")
