"""Build and deployment state tracking.

The store is the single source of truth for Build and Deployment records.
Every entity has its own re-entrant lock; status changes go through
``transition_build`` / ``transition_deployment`` which validate against the
state machines, so a stale poll result can never overwrite a newer
webhook-driven status. When a ``state_path`` is configured the store is
snapshotted to JSON after every state change.
"""

from __future__ import annotations

import json
import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field, ValidationError

from clouddeck.lib.errors import DeploymentError, NotFoundError, StateConflictError
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.build import (
    Build,
    BuildStatus,
    LogEntry,
    can_transition_build,
    utcnow,
)
from clouddeck.models.deployment import (
    Deployment,
    DeploymentStatus,
    Environment,
    can_transition_deployment,
)
from clouddeck.models.events import WebhookFailure

logger = get_logger(__name__)

STATE_VERSION = "1.0"
MAX_WEBHOOK_FAILURES = 500

RecordT = TypeVar("RecordT", Build, Deployment)


class StoreSnapshot(BaseModel):
    """On-disk representation of the store."""

    version: str = STATE_VERSION
    builds: dict[str, Build] = Field(default_factory=dict)
    deployments: dict[str, Deployment] = Field(default_factory=dict)
    live: dict[str, str] = Field(default_factory=dict)
    webhook_failures: list[WebhookFailure] = Field(default_factory=list)


def load_state(state_path: Path) -> StoreSnapshot:
    """Load a store snapshot from disk."""
    if not state_path.exists():
        return StoreSnapshot()

    try:
        content = state_path.read_text(encoding="utf-8")
        if not content.strip():
            return StoreSnapshot()
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to read deployment state at {state_path}: {exc}",
        ) from exc

    try:
        return StoreSnapshot.model_validate_json(content)
    except ValidationError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Invalid deployment state format in {state_path}: {exc}",
        ) from exc


def save_state(state_path: Path, snapshot: StoreSnapshot) -> None:
    """Persist a store snapshot to disk atomically."""
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(snapshot.model_dump(mode="json"), indent=2, sort_keys=True)
        tmp_path = state_path.with_suffix(state_path.suffix + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(state_path)
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to write deployment state to {state_path}: {exc}",
        ) from exc


def _live_key(project_id: str, environment: Environment | str) -> str:
    env = environment.value if isinstance(environment, Environment) else environment
    return f"{project_id}:{env}"


def _paginate(records: list[RecordT], limit: int, offset: int) -> list[RecordT]:
    return records[offset : offset + limit]


def _success_rate(successful: int, total: int) -> float:
    return round(successful / total * 100, 2) if total else 0.0


class DeploymentStore:
    """Thread-safe in-memory store of builds and deployments."""

    def __init__(self, state_path: str | Path | None = None) -> None:
        """Create a store, loading the snapshot at ``state_path`` if present."""
        self._lock = threading.RLock()
        # Locks live only while some caller holds a reference to them
        self._entity_locks: weakref.WeakValueDictionary[str, Any] = (
            weakref.WeakValueDictionary()
        )
        self._state_path = Path(state_path) if state_path else None

        snapshot = load_state(self._state_path) if self._state_path else StoreSnapshot()
        self._builds = dict(snapshot.builds)
        self._deployments = dict(snapshot.deployments)
        self._live = dict(snapshot.live)
        self._webhook_failures = list(snapshot.webhook_failures)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def entity_lock(self, entity_id: str) -> threading.RLock:
        """Return the lock serializing updates to one entity."""
        with self._lock:
            lock = self._entity_locks.get(entity_id)
            if lock is None:
                lock = threading.RLock()
                self._entity_locks[entity_id] = lock
            return lock

    @contextmanager
    def locked(self, entity_id: str) -> Iterator[None]:
        """Hold an entity's lock for a read-modify-write sequence."""
        with self.entity_lock(entity_id):
            yield

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def add_build(self, build: Build) -> Build:
        """Insert a new build record."""
        with self._lock:
            self._builds[build.id] = build
            self._persist()
        return build

    def get_build(self, build_id: str) -> Build:
        """Return a build.

        Raises:
            NotFoundError: If the build does not exist
        """
        with self._lock:
            build = self._builds.get(build_id)
        if build is None:
            raise NotFoundError("build", build_id)
        return build

    def update_build(self, build_id: str, **changes: Any) -> Build:
        """Replace fields on a build without a status change."""
        with self.entity_lock(build_id):
            updated = self.get_build(build_id).model_copy(update=changes)
            with self._lock:
                self._builds[build_id] = updated
                self._persist()
            return updated

    def transition_build(
        self, build_id: str, status: BuildStatus, **changes: Any
    ) -> Build:
        """Move a build to a new status.

        Raises:
            StateConflictError: If the transition is not allowed
        """
        with self.entity_lock(build_id):
            current = self.get_build(build_id)
            if not can_transition_build(current.status, status):
                raise StateConflictError(
                    "build", build_id, current.status.value, f"move to {status.value}"
                )
            return self.update_build(build_id, status=status, **changes)

    def append_build_log(self, build_id: str, entry: LogEntry) -> None:
        """Append one structured log line to a build."""
        with self.entity_lock(build_id):
            self.get_build(build_id).logs.append(entry)

    def list_builds(
        self,
        project_id: str | None = None,
        status: BuildStatus | None = None,
        branch: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Build], int]:
        """List builds newest first.

        Returns:
            Tuple of (page of builds, total matching count)
        """
        with self._lock:
            builds = list(self._builds.values())
        matches = [
            b
            for b in builds
            if (project_id is None or b.project_id == project_id)
            and (status is None or b.status == status)
            and (branch is None or b.branch == branch)
        ]
        matches.sort(key=lambda b: (b.created_at, b.id), reverse=True)
        return _paginate(matches, limit, offset), len(matches)

    def find_cached_build(
        self, project_id: str, cache_key: str, commit_sha: str | None
    ) -> Build | None:
        """Return the newest successful build with the same cache key and commit."""
        with self._lock:
            builds = list(self._builds.values())
        candidates = [
            b
            for b in builds
            if b.project_id == project_id
            and b.status == BuildStatus.SUCCESS
            and b.cache_key == cache_key
            and b.commit_sha == commit_sha
            and b.artifacts
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda b: (b.created_at, b.id))

    def build_stats(
        self, project_id: str | None = None, since: datetime | None = None
    ) -> dict[str, Any]:
        """Summarize finished builds."""
        with self._lock:
            builds = list(self._builds.values())
        selected = [
            b
            for b in builds
            if (project_id is None or b.project_id == project_id)
            and (since is None or b.created_at >= since)
        ]
        successful = sum(1 for b in selected if b.status == BuildStatus.SUCCESS)
        failed = sum(1 for b in selected if b.status == BuildStatus.FAILED)
        durations = [b.duration_ms for b in selected if b.duration_ms is not None]
        return {
            "total": len(selected),
            "successful": successful,
            "failed": failed,
            "cancelled": sum(1 for b in selected if b.status == BuildStatus.CANCELLED),
            "success_rate": _success_rate(successful, successful + failed),
            "average_duration_ms": (
                round(sum(durations) / len(durations)) if durations else None
            ),
            "cache_hits": sum(1 for b in selected if b.cache_hit),
        }

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def add_deployment(self, deployment: Deployment) -> Deployment:
        """Insert a new deployment record."""
        with self._lock:
            self._deployments[deployment.id] = deployment
            self._persist()
        return deployment

    def get_deployment(self, deployment_id: str) -> Deployment:
        """Return a deployment.

        Raises:
            NotFoundError: If the deployment does not exist
        """
        with self._lock:
            deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise NotFoundError("deployment", deployment_id)
        return deployment

    def update_deployment(self, deployment_id: str, **changes: Any) -> Deployment:
        """Replace fields on a deployment without a status change."""
        with self.entity_lock(deployment_id):
            current = self.get_deployment(deployment_id)
            updated = current.model_copy(update={**changes, "updated_at": utcnow()})
            with self._lock:
                self._deployments[deployment_id] = updated
                self._persist()
            return updated

    def transition_deployment(
        self, deployment_id: str, status: DeploymentStatus, **changes: Any
    ) -> Deployment:
        """Move a deployment to a new status.

        Raises:
            StateConflictError: If the transition is not allowed
        """
        with self.entity_lock(deployment_id):
            current = self.get_deployment(deployment_id)
            if not can_transition_deployment(current.status, status):
                raise StateConflictError(
                    "deployment",
                    deployment_id,
                    current.status.value,
                    f"move to {status.value}",
                )
            if status.is_terminal and "finished_at" not in changes:
                changes["finished_at"] = utcnow()
            return self.update_deployment(deployment_id, status=status, **changes)

    def append_deployment_log(self, deployment_id: str, entry: LogEntry) -> None:
        """Append one structured log line to a deployment."""
        with self.entity_lock(deployment_id):
            self.get_deployment(deployment_id).logs.append(entry)

    def list_deployments(
        self,
        project_id: str | None = None,
        environment: Environment | None = None,
        status: DeploymentStatus | None = None,
        provider: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Deployment], int]:
        """List deployments newest first.

        Returns:
            Tuple of (page of deployments, total matching count)
        """
        with self._lock:
            deployments = list(self._deployments.values())
        matches = [
            d
            for d in deployments
            if (project_id is None or d.project_id == project_id)
            and (environment is None or d.environment == environment)
            and (status is None or d.status == status)
            and (provider is None or d.provider == provider)
        ]
        matches.sort(key=lambda d: (d.created_at, d.id), reverse=True)
        return _paginate(matches, limit, offset), len(matches)

    def find_by_provider_deployment_id(
        self, provider: str, provider_deployment_id: str
    ) -> Deployment | None:
        """Look up a deployment by the provider-assigned id."""
        with self._lock:
            for deployment in self._deployments.values():
                if (
                    deployment.provider == provider
                    and deployment.provider_deployment_id == provider_deployment_id
                ):
                    return deployment
        return None

    def deployment_stats(
        self, project_id: str | None = None, since: datetime | None = None
    ) -> dict[str, Any]:
        """Summarize deployments by outcome."""
        with self._lock:
            deployments = list(self._deployments.values())
        selected = [
            d
            for d in deployments
            if (project_id is None or d.project_id == project_id)
            and (since is None or d.created_at >= since)
        ]
        successful = sum(1 for d in selected if d.status == DeploymentStatus.RUNNING)
        failed = sum(1 for d in selected if d.status == DeploymentStatus.FAILED)
        durations = [
            (d.finished_at - d.started_at).total_seconds() * 1000
            for d in selected
            if d.started_at and d.finished_at
        ]
        by_provider: dict[str, int] = {}
        for d in selected:
            by_provider[d.provider] = by_provider.get(d.provider, 0) + 1
        return {
            "total": len(selected),
            "successful": successful,
            "failed": failed,
            "success_rate": _success_rate(successful, successful + failed),
            "average_duration_ms": (
                round(sum(durations) / len(durations)) if durations else None
            ),
            "by_provider": by_provider,
        }

    # ------------------------------------------------------------------
    # Live pointer
    # ------------------------------------------------------------------

    def get_live(
        self, project_id: str, environment: Environment | str
    ) -> Deployment | None:
        """Return the deployment currently serving an environment."""
        with self._lock:
            deployment_id = self._live.get(_live_key(project_id, environment))
            return self._deployments.get(deployment_id) if deployment_id else None

    def set_live(self, deployment: Deployment) -> bool:
        """Make a running deployment live unless a newer one already is.

        Returns:
            True if the pointer moved
        """
        key = _live_key(deployment.project_id, deployment.environment)
        with self._lock:
            current_id = self._live.get(key)
            current = self._deployments.get(current_id) if current_id else None
            if current is not None and (current.created_at, current.id) > (
                deployment.created_at,
                deployment.id,
            ):
                return False
            self._live[key] = deployment.id
            self._persist()
        return True

    # ------------------------------------------------------------------
    # Webhook failures
    # ------------------------------------------------------------------

    def record_webhook_failure(self, failure: WebhookFailure) -> None:
        """Keep a webhook failure for operator visibility."""
        with self._lock:
            self._webhook_failures.append(failure)
            del self._webhook_failures[:-MAX_WEBHOOK_FAILURES]
            self._persist()

    def list_webhook_failures(self, limit: int = 50) -> list[WebhookFailure]:
        """Return the most recent webhook failures, newest first."""
        with self._lock:
            return list(reversed(self._webhook_failures))[:limit]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> StoreSnapshot:
        """Return a point-in-time copy of the store."""
        with self._lock:
            return StoreSnapshot(
                builds=dict(self._builds),
                deployments=dict(self._deployments),
                live=dict(self._live),
                webhook_failures=list(self._webhook_failures),
            )

    def flush(self) -> None:
        """Write the snapshot now, including log lines appended since the last save."""
        self._persist()

    def _persist(self) -> None:
        if self._state_path is None:
            return
        with self._lock:
            save_state(self._state_path, self.snapshot())

