"""Deployment orchestration for CloudDeck.

The orchestrator owns the Deployment state machine. A deployment request is
recorded and returned immediately; a worker thread then runs the build,
waits for it, hands the artifacts to the provider adapter and reconciles the
provider's status. Rollbacks and promotions are new Deployment records that
reference the deployment they replay, so history is never rewritten.
"""

from __future__ import annotations

import contextlib
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import timedelta
from typing import Any

from clouddeck.config.loader import ProjectCatalog
from clouddeck.deploy.builder import BuildPipeline
from clouddeck.deploy.events import EventBus
from clouddeck.deploy.registry import AdapterRegistry, Provider
from clouddeck.deploy.state import DeploymentStore
from clouddeck.lib.errors import (
    BuildTimeoutError,
    CloudDeckError,
    DeployLockedError,
    DeploymentError,
    NotFoundError,
    ProviderError,
    StateConflictError,
    ValidationError,
)
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.build import (
    Artifact,
    Build,
    BuildStatus,
    BuildTrigger,
    LogEntry,
    LogLevel,
    utcnow,
)
from clouddeck.models.config import PlatformConfig
from clouddeck.models.deployment import (
    CANCELLABLE_STATES,
    CancelResult,
    ConnectResult,
    DeployConfig,
    Deployment,
    DeploymentLogs,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    DeploymentTrigger,
    DeploymentType,
    DisconnectResult,
    Environment,
    PreviewInfo,
    ProviderEvent,
    ProviderMetadata,
    can_transition_deployment,
)
from clouddeck.models.events import (
    DEPLOYMENT_CANCELLED,
    DEPLOYMENT_FAILED,
    DEPLOYMENT_SUCCESS,
)
from clouddeck.models.project import Project

logger = get_logger(__name__)

# DeployConfig fields that also flow into the build settings
_BUILD_OVERRIDE_FIELDS = ("build_command", "output_directory", "framework")

_METADATA_FIELDS = ("project_id", "site_id", "service_id", "domain_name", "region")


class DeploymentOrchestrator:
    """Drives deployments from request to a live provider URL.

    Example:
        >>> orchestrator = DeploymentOrchestrator(
        ...     config, store, catalog, registry, pipeline
        ... )
        >>> deployment = orchestrator.deploy("web", provider="vercel")
        >>> orchestrator.wait(deployment.id, timeout=900).status
        <DeploymentStatus.RUNNING: 'running'>
    """

    def __init__(
        self,
        config: PlatformConfig,
        store: DeploymentStore,
        catalog: ProjectCatalog,
        registry: AdapterRegistry,
        pipeline: BuildPipeline,
        events: EventBus | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Platform configuration (timeouts, pool size, defaults)
            store: Record store for builds and deployments
            catalog: Project snapshots
            registry: Provider adapter registry
            pipeline: Build pipeline used for every non-promotion deployment
            events: Bus receiving domain events and audit facts
            executor: Deployment worker pool (defaults to ``max_workers`` threads)
        """
        self.config = config
        self.store = store
        self.catalog = catalog
        self.registry = registry
        self.pipeline = pipeline
        self.events = events or EventBus()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="clouddeck-deploy"
        )
        self._jobs: dict[str, Future[None]] = {}
        self._jobs_lock = threading.Lock()
        self._stopping = threading.Event()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def deploy(
        self,
        project_id: str,
        *,
        environment: Environment | str = Environment.PRODUCTION,
        provider: str | None = None,
        branch: str | None = None,
        commit_sha: str | None = None,
        config: DeployConfig | dict[str, Any] | None = None,
        trigger: DeploymentTrigger = DeploymentTrigger.MANUAL,
        user_id: str | None = None,
        git_author: str | None = None,
        commit_message: str | None = None,
        preview: PreviewInfo | None = None,
        canary_percentage: int | None = None,
    ) -> Deployment:
        """Record a deployment and run it in the background.

        Args:
            project_id: Project to deploy
            environment: Target environment
            provider: Provider name; falls back to the project, then the
                platform default
            branch: Branch to deploy (defaults to the repository branch)
            commit_sha: Specific commit to deploy
            config: Per-call overrides of provider and build settings
            trigger: What requested the deployment
            user_id: Caller identity for audit attribution
            git_author: Author of the deployed commit
            commit_message: Message of the deployed commit
            preview: Pull request details for preview deployments
            canary_percentage: Share of traffic for a canary rollout

        Returns:
            The stored deployment in ``pending``

        Raises:
            NotFoundError: If the project does not exist
            DeployLockedError: If deployments are locked for the project
            UnknownProviderError: If the provider name does not resolve
        """
        project = self.catalog.get(project_id)
        self._check_lock(project)
        provider_name = Provider.parse(
            provider or project.provider or self.config.default_provider
        ).value
        deploy_config = self._merge_config(project, config)
        target_env = Environment(environment)

        deployment = Deployment(
            project_id=project.id,
            environment=target_env,
            provider=provider_name,
            branch=branch or deploy_config.branch or project.repository.branch,
            commit_sha=commit_sha,
            git_author=git_author,
            commit_message=commit_message,
            trigger=trigger,
            deployment_type=(
                DeploymentType.PREVIEW
                if target_env == Environment.PREVIEW
                else DeploymentType.STANDARD
            ),
            config=deploy_config,
            canary=canary_percentage is not None,
            canary_percentage=canary_percentage,
            preview=preview,
            created_by=user_id,
        )
        return self._start(deployment, f"DEPLOYMENT_STARTED_{provider_name.upper()}")

    def rollback(
        self,
        target_id: str,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> Deployment:
        """Redeploy a prior deployment's content as a new deployment.

        The target is left untouched; the new record carries
        ``rollback_from_id`` pointing at it and goes through the full
        build and deploy sequence.

        Raises:
            NotFoundError: If the target does not exist
            StateConflictError: If the target never reached ``running``
            DeployLockedError: If deployments are locked for the project
        """
        target = self.store.get_deployment(target_id)
        if target.status != DeploymentStatus.RUNNING:
            raise StateConflictError(
                "deployment", target_id, target.status.value, "roll back to"
            )
        project = self.catalog.get(target.project_id)
        self._check_lock(project)

        deployment = Deployment(
            project_id=target.project_id,
            environment=target.environment,
            provider=target.provider,
            branch=target.branch,
            commit_sha=target.commit_sha,
            git_author=target.git_author,
            commit_message=target.commit_message,
            trigger=DeploymentTrigger.ROLLBACK,
            deployment_type=DeploymentType.ROLLBACK,
            config=target.config,
            rollback_from_id=target.id,
            rollback_reason=reason,
            created_by=user_id,
        )
        logger.info(f"Rolling back {target.project_id} to deployment {target.id}")
        return self._start(deployment, "DEPLOYMENT_ROLLBACK")

    def promote(
        self,
        source_id: str,
        target_environment: Environment | str,
        user_id: str | None = None,
    ) -> Deployment:
        """Deploy a running deployment's build into another environment.

        Raises:
            NotFoundError: If the source does not exist
            StateConflictError: If the source is not ``running``
            ValidationError: If the target environment is the source's own,
                or the source has no build to reuse
            DeployLockedError: If deployments are locked for the project
        """
        source = self.store.get_deployment(source_id)
        if source.status != DeploymentStatus.RUNNING:
            raise StateConflictError(
                "deployment", source_id, source.status.value, "promote"
            )
        target_env = Environment(target_environment)
        if target_env == source.environment:
            raise ValidationError(
                "target_environment",
                f"Deployment {source_id} is already in {target_env.value}",
            )
        if not source.build_id:
            raise ValidationError(
                "source", f"Deployment {source_id} has no build to promote"
            )
        project = self.catalog.get(source.project_id)
        self._check_lock(project)

        deployment = Deployment(
            project_id=source.project_id,
            environment=target_env,
            provider=source.provider,
            build_id=source.build_id,
            branch=source.branch,
            commit_sha=source.commit_sha,
            git_author=source.git_author,
            commit_message=source.commit_message,
            trigger=DeploymentTrigger.PROMOTION,
            deployment_type=DeploymentType.PROMOTION,
            config=source.config,
            promoted_from_id=source.id,
            created_by=user_id,
        )
        logger.info(
            f"Promoting deployment {source.id} from "
            f"{source.environment.value} to {target_env.value}"
        )
        return self._start(deployment, "DEPLOYMENT_PROMOTED")

    def cancel(self, deployment_id: str, user_id: str | None = None) -> Deployment:
        """Cancel a deployment that has not finished.

        The active build is cancelled first (terminating its subprocess), then
        the deployment moves to ``cancelled``. A provider-side deployment, if
        one was already created, is cancelled on a best-effort basis.

        Raises:
            NotFoundError: If the deployment does not exist
            StateConflictError: If the deployment already finished
        """
        with self.store.entity_lock(deployment_id):
            deployment = self.store.get_deployment(deployment_id)
            if deployment.status not in CANCELLABLE_STATES:
                raise StateConflictError(
                    "deployment", deployment_id, deployment.status.value, "cancel"
                )
            if (
                deployment.build_id
                and deployment.deployment_type != DeploymentType.PROMOTION
            ):
                with contextlib.suppress(StateConflictError):
                    self.pipeline.cancel_build(deployment.build_id)
            deployment = self.store.transition_deployment(
                deployment_id, DeploymentStatus.CANCELLED
            )

        self._log(deployment_id, "Deployment cancelled", LogLevel.WARN)
        if deployment.provider_deployment_id:
            self._cancel_on_provider(deployment)
        self.events.audit(
            "DEPLOYMENT_CANCELED",
            "deployment",
            deployment_id,
            user_id,
            provider=deployment.provider,
            project_id=deployment.project_id,
        )
        self._on_transition(deployment)
        logger.info(f"Cancelled deployment {deployment_id}")
        return deployment

    # ------------------------------------------------------------------
    # Provider reconciliation
    # ------------------------------------------------------------------

    def refresh_status(self, deployment_id: str) -> Deployment:
        """Poll the provider and reconcile the deployment's status."""
        deployment = self.store.get_deployment(deployment_id)
        if not deployment.provider_deployment_id or deployment.status.is_terminal:
            return deployment
        result = self.registry.get_deployment_status(
            deployment.provider, deployment.provider_deployment_id
        )
        self._apply_status(
            deployment_id,
            result.status,
            url=result.url,
            error_message=result.metadata.get("error_message"),
        )
        return self.store.get_deployment(deployment_id)

    def apply_provider_event(self, provider: str, event: ProviderEvent) -> Deployment:
        """Apply a status change reported by a provider webhook.

        The deployment is looked up by the provider-assigned id only.

        Raises:
            NotFoundError: If no deployment carries that provider id
        """
        provider_name = Provider.parse(provider).value
        deployment = self.store.find_by_provider_deployment_id(
            provider_name, event.provider_deployment_id
        )
        if deployment is None:
            raise NotFoundError(
                "deployment", f"{provider_name}:{event.provider_deployment_id}"
            )
        self._apply_status(
            deployment.id,
            event.status,
            url=event.url,
            error_message=event.error_message,
        )
        return self.store.get_deployment(deployment.id)

    def get_provider_logs(
        self, deployment_id: str, limit: int = 50, offset: int = 0
    ) -> DeploymentLogs:
        """Return provider-side logs, or the recorded log when none exist yet."""
        deployment = self.store.get_deployment(deployment_id)
        if not deployment.provider_deployment_id:
            page = deployment.logs[offset : offset + limit]
            return DeploymentLogs(
                logs=page, has_more=len(deployment.logs) > offset + limit
            )
        return self.registry.get_deployment_logs(
            deployment.provider,
            deployment.provider_deployment_id,
            limit=limit,
            offset=offset,
        )

    def list_provider_deployments(
        self,
        provider: str,
        project_ref: str,
        limit: int = 10,
        offset: int = 0,
        status: DeploymentStatus | None = None,
    ) -> list[DeploymentResult]:
        """List deployments as the provider sees them."""
        return self.registry.list_deployments(
            provider, project_ref, limit=limit, offset=offset, status=status
        )

    def connect_provider(
        self,
        provider: str,
        credentials: dict[str, Any],
        user_id: str | None = None,
    ) -> ConnectResult:
        """Verify provider credentials and record the connection."""
        provider_name = Provider.parse(provider).value
        result = self.registry.connect_account(provider_name, credentials)
        if result.connected:
            self.events.audit(
                f"PROVIDER_CONNECTED_{provider_name.upper()}",
                "provider",
                provider_name,
                user_id,
                account_info=result.account_info,
            )
        return result

    def disconnect_provider(
        self, provider: str, account_id: str, user_id: str | None = None
    ) -> DisconnectResult:
        """Disconnect a provider account and record it."""
        provider_name = Provider.parse(provider).value
        result = self.registry.disconnect_account(provider_name, account_id)
        if result.success:
            self.events.audit(
                f"PROVIDER_DISCONNECTED_{provider_name.upper()}",
                "provider",
                provider_name,
                user_id,
                account_id=account_id,
            )
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, deployment_id: str) -> Deployment:
        """Return a deployment record."""
        return self.store.get_deployment(deployment_id)

    def list_deployments(
        self,
        project_id: str | None = None,
        environment: Environment | None = None,
        status: DeploymentStatus | None = None,
        provider: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Deployment], int]:
        """List deployments newest first with the total match count."""
        return self.store.list_deployments(
            project_id=project_id,
            environment=environment,
            status=status,
            provider=provider,
            limit=limit,
            offset=offset,
        )

    def environment_status(
        self, project_id: str, environment: Environment | str
    ) -> dict[str, Any]:
        """Summarize what an environment is serving and what is in flight."""
        env = Environment(environment)
        live = self.store.get_live(project_id, env)
        return {
            "project_id": project_id,
            "environment": env.value,
            "live_deployment": live,
            "active_deployments": self._count_active(project_id, env),
            "url": live.url if live else None,
        }

    def stats(self, project_id: str | None = None, days: int = 30) -> dict[str, Any]:
        """Deployment and build statistics over the last ``days`` days."""
        since = utcnow() - timedelta(days=days)
        return {
            "days": days,
            "deployments": self.store.deployment_stats(project_id, since),
            "builds": self.store.build_stats(project_id, since),
        }

    def wait(self, deployment_id: str, timeout: float | None = None) -> Deployment:
        """Block until the background job for a deployment finishes.

        Raises:
            DeploymentError: If the job is still running after ``timeout``
        """
        with self._jobs_lock:
            future = self._jobs.get(deployment_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError as e:
                raise DeploymentError(
                    "wait", f"Deployment {deployment_id} still in progress"
                ) from e
        return self.store.get_deployment(deployment_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop provider watches, cancel running builds and the worker pool."""
        self._stopping.set()
        self.pipeline.shutdown(wait=False)
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        self.store.flush()

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def _start(self, deployment: Deployment, audit_action: str) -> Deployment:
        live = self.store.get_live(deployment.project_id, deployment.environment)
        if live is not None:
            deployment.previous_deployment_id = live.id
        self.store.add_deployment(deployment)
        self._log(
            deployment.id,
            f"Deployment queued for {deployment.environment.value} "
            f"on {deployment.provider}",
        )
        self.events.audit(
            audit_action,
            "deployment",
            deployment.id,
            deployment.created_by,
            provider=deployment.provider,
            project_id=deployment.project_id,
            environment=deployment.environment.value,
        )
        future = self._executor.submit(self._execute, deployment.id)
        with self._jobs_lock:
            self._jobs[deployment.id] = future
        future.add_done_callback(lambda _: self._forget_job(deployment.id))
        logger.info(
            f"Deployment {deployment.id} started for project {deployment.project_id}"
        )
        return deployment

    def _forget_job(self, deployment_id: str) -> None:
        with self._jobs_lock:
            self._jobs.pop(deployment_id, None)

    def _execute(self, deployment_id: str) -> None:
        """Run one deployment end to end in a worker thread.

        Errors never propagate: the deployment ends ``failed`` with a
        recorded message and any live deployment keeps serving.
        """
        deployment = self.store.get_deployment(deployment_id)
        if deployment.status != DeploymentStatus.PENDING:
            logger.debug(f"Deployment {deployment_id} is {deployment.status.value}")
            return

        try:
            project = self.catalog.get(deployment.project_id)
            if deployment.deployment_type == DeploymentType.PROMOTION:
                artifacts = self._promotion_artifacts(deployment)
                self._transition(
                    deployment_id, DeploymentStatus.DEPLOYING, started_at=utcnow()
                )
            else:
                build = self._build(deployment, project)
                if build is None:
                    return
                artifacts = build.artifacts
                self._transition(deployment_id, DeploymentStatus.DEPLOYING)
            self._create_on_provider(deployment_id, project, artifacts)
        except StateConflictError as e:
            # Status was changed underneath the job, normally by cancel()
            logger.info(f"Deployment {deployment_id} stopped: {e}")
        except Exception as e:
            if not isinstance(e, CloudDeckError):
                logger.error(f"Deployment {deployment_id} crashed: {e}", exc_info=True)
            self._fail(deployment_id, str(e) or e.__class__.__name__)

    def _build(self, deployment: Deployment, project: Project) -> Build | None:
        """Run the build for a deployment and wait for it.

        Returns:
            The successful build, or None when the deployment was stopped
        """
        build = self.pipeline.create_build(
            project,
            branch=deployment.branch,
            commit_sha=deployment.commit_sha,
            deployment_id=deployment.id,
            trigger=(
                BuildTrigger.ROLLBACK
                if deployment.deployment_type == DeploymentType.ROLLBACK
                else BuildTrigger.DEPLOYMENT
            ),
            user_id=deployment.created_by,
            build_overrides=self._build_overrides(project, deployment.config),
        )
        with self.store.entity_lock(deployment.id):
            if self.store.get_deployment(deployment.id).status.is_terminal:
                with contextlib.suppress(StateConflictError):
                    self.pipeline.cancel_build(build.id)
                return None
            self._transition(
                deployment.id,
                DeploymentStatus.BUILDING,
                build_id=build.id,
                started_at=utcnow(),
            )

        self.pipeline.start(build.id)
        try:
            build = self.pipeline.wait_for_completion(
                build.id,
                timeout=self.config.build_timeout,
                poll_interval=self.config.build_poll_interval,
            )
        except BuildTimeoutError as e:
            with contextlib.suppress(StateConflictError):
                self.pipeline.cancel_build(build.id)
            self._fail(deployment.id, e.message)
            return None

        if build.status == BuildStatus.SUCCESS:
            self._log(deployment.id, f"Build {build.id} succeeded")
            return build
        if build.status == BuildStatus.FAILED:
            self._fail(deployment.id, f"Build failed: {build.error_message}")
        else:
            self._apply_status(deployment.id, DeploymentStatus.CANCELLED)
        return None

    def _promotion_artifacts(self, deployment: Deployment) -> list[Artifact]:
        build = self.store.get_build(deployment.build_id or "")
        if build.status != BuildStatus.SUCCESS or not build.artifacts:
            raise DeploymentError(
                "promote", f"Build {build.id} has no artifacts to promote"
            )
        self._log(deployment.id, f"Reusing artifacts of build {build.id}")
        return build.artifacts

    def _create_on_provider(
        self, deployment_id: str, project: Project, artifacts: list[Artifact]
    ) -> None:
        deployment = self.store.get_deployment(deployment_id)
        request = DeploymentRequest(
            project=project,
            config=deployment.config.model_copy(update={"branch": deployment.branch}),
            deployment_id=deployment.id,
            commit_sha=deployment.commit_sha,
            artifacts=artifacts,
        )
        result = self.registry.create_deployment(deployment.provider, request)
        self._log(
            deployment_id,
            f"Created {deployment.provider} deployment "
            f"{result.provider_deployment_id}",
        )

        with self.store.entity_lock(deployment_id):
            self.store.update_deployment(
                deployment_id,
                provider_deployment_id=result.provider_deployment_id,
                provider_metadata=self._provider_metadata(result),
                url=result.url or deployment.url,
            )
            cancelled = self.store.get_deployment(deployment_id).status.is_terminal

        if cancelled:
            self._cancel_on_provider(self.store.get_deployment(deployment_id))
            return
        self._apply_status(deployment_id, result.status, url=result.url)
        if self.config.provider_poll_timeout > 0:
            self._watch_provider(deployment_id)

    def _watch_provider(self, deployment_id: str) -> None:
        """Poll the provider until the deployment settles or the watch expires."""
        interval = self.config.provider_poll_interval
        polls = max(1, int(self.config.provider_poll_timeout // interval))
        for _ in range(polls):
            if self._stopping.wait(interval):
                return
            try:
                deployment = self.refresh_status(deployment_id)
            except ProviderError as e:
                logger.warning(f"Status refresh failed for {deployment_id}: {e}")
                continue
            if deployment.status.is_terminal:
                return
        logger.info(f"Stopped watching deployment {deployment_id}; awaiting webhook")

    def _cancel_on_provider(self, deployment: Deployment) -> CancelResult | None:
        try:
            return self.registry.cancel_deployment(
                deployment.provider, deployment.provider_deployment_id or ""
            )
        except CloudDeckError as e:
            logger.warning(
                f"Provider cancel failed for deployment {deployment.id}: {e}"
            )
            return None

    # ------------------------------------------------------------------
    # Status handling
    # ------------------------------------------------------------------

    def _apply_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        url: str | None = None,
        error_message: str | None = None,
    ) -> Deployment | None:
        """Apply a status under the deployment's lock, ignoring stale updates.

        Returns:
            The updated deployment, or None if nothing changed
        """
        with self.store.entity_lock(deployment_id):
            current = self.store.get_deployment(deployment_id)
            if status == current.status:
                if url and url != current.url:
                    self.store.update_deployment(deployment_id, url=url)
                return None
            if not can_transition_deployment(current.status, status):
                logger.debug(
                    f"Ignoring {status.value} for deployment {deployment_id} "
                    f"in {current.status.value}"
                )
                return None
            changes: dict[str, Any] = {}
            if url:
                changes["url"] = url
            if status == DeploymentStatus.FAILED:
                changes["error_message"] = (
                    error_message or current.error_message or "Deployment failed"
                )
            updated = self.store.transition_deployment(deployment_id, status, **changes)

        self._log(deployment_id, f"Deployment status changed to: {status.value}")
        self._on_transition(updated)
        return updated

    def _on_transition(self, deployment: Deployment) -> None:
        payload: dict[str, Any] = {
            "deployment": deployment.id,
            "environment": deployment.environment.value,
        }
        if deployment.status == DeploymentStatus.RUNNING:
            if self.store.set_live(deployment):
                logger.info(
                    f"Deployment {deployment.id} is live in "
                    f"{deployment.environment.value}"
                )
            self.events.emit(
                DEPLOYMENT_SUCCESS,
                deployment.project_id,
                {**payload, "url": deployment.url},
            )
        elif deployment.status == DeploymentStatus.FAILED:
            self.events.emit(
                DEPLOYMENT_FAILED,
                deployment.project_id,
                {**payload, "error": deployment.error_message},
            )
        elif deployment.status in (
            DeploymentStatus.CANCELLED,
            DeploymentStatus.ROLLED_BACK,
        ):
            self.events.emit(DEPLOYMENT_CANCELLED, deployment.project_id, payload)

    def _transition(
        self, deployment_id: str, status: DeploymentStatus, **changes: Any
    ) -> Deployment:
        deployment = self.store.transition_deployment(deployment_id, status, **changes)
        self._log(deployment_id, f"Deployment status changed to: {status.value}")
        return deployment

    def _fail(self, deployment_id: str, message: str) -> None:
        updated = self._apply_status(
            deployment_id, DeploymentStatus.FAILED, error_message=message
        )
        if updated is not None:
            self._log(deployment_id, f"Deployment failed: {message}", LogLevel.ERROR)
            logger.warning(
                f"Deployment {deployment_id} failed: {message.splitlines()[0]}"
            )

    def _log(
        self, deployment_id: str, message: str, level: LogLevel = LogLevel.INFO
    ) -> None:
        self.store.append_deployment_log(
            deployment_id, LogEntry(level=level, message=message)
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _count_active(self, project_id: str, environment: Environment) -> int:
        return sum(
            self.store.list_deployments(
                project_id=project_id, environment=environment, status=status, limit=0
            )[1]
            for status in CANCELLABLE_STATES
        )

    @staticmethod
    def _check_lock(project: Project) -> None:
        if project.deploy_lock.enabled:
            raise DeployLockedError(project.id, project.deploy_lock.reason)

    @staticmethod
    def _merge_config(
        project: Project, config: DeployConfig | dict[str, Any] | None
    ) -> DeployConfig:
        """Layer per-call overrides over the project's provider options."""
        options = {
            key: value
            for key, value in project.provider_options.items()
            if key in DeployConfig.model_fields
        }
        if isinstance(config, DeployConfig):
            overrides = config.model_dump(exclude_unset=True)
        else:
            overrides = dict(config or {})
        return DeployConfig.model_validate({**options, **overrides})

    @staticmethod
    def _build_overrides(project: Project, config: DeployConfig) -> dict[str, Any]:
        overrides: dict[str, Any] = {
            field: getattr(config, field) for field in _BUILD_OVERRIDE_FIELDS
        }
        if config.root_directory:
            overrides["root_directory"] = config.root_directory
        if config.env:
            overrides["environment_variables"] = {
                **project.build.environment_variables,
                **config.env,
            }
        return overrides

    @staticmethod
    def _provider_metadata(result: DeploymentResult) -> ProviderMetadata:
        known = {
            field: str(result.metadata[field])
            for field in _METADATA_FIELDS
            if result.metadata.get(field) is not None
        }
        additional = {
            key: value
            for key, value in result.metadata.items()
            if key not in _METADATA_FIELDS
        }
        return ProviderMetadata(**known, additional=additional)
