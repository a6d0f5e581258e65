"""Build records produced by the build pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field
from ulid import ULID

from clouddeck.models.project import BuildSettings


def utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a new sortable record identifier."""
    return str(ULID())


class LogLevel(str, Enum):
    """Severity of a structured log line."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEntry(BaseModel):
    """One structured log line on a build or deployment."""

    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str


class BuildStatus(str, Enum):
    """Build pipeline states, in pipeline order."""

    PENDING = "pending"
    CLONING = "cloning"
    INSTALLING = "installing"
    BUILDING = "building"
    PACKAGING = "packaging"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether the build can no longer change status."""
        return self in BUILD_TERMINAL_STATES


BUILD_TERMINAL_STATES = frozenset(
    {BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.CANCELLED}
)

BUILD_PIPELINE_ORDER: tuple[BuildStatus, ...] = (
    BuildStatus.PENDING,
    BuildStatus.CLONING,
    BuildStatus.INSTALLING,
    BuildStatus.BUILDING,
    BuildStatus.PACKAGING,
    BuildStatus.SUCCESS,
)


def can_transition_build(current: BuildStatus, target: BuildStatus) -> bool:
    """Check a build status transition against the pipeline DAG.

    Each non-terminal state may advance to the next pipeline state, or jump
    to ``failed`` / ``cancelled``. Terminal states never change.
    """
    if current.is_terminal:
        return False
    if target in (BuildStatus.FAILED, BuildStatus.CANCELLED):
        return True
    index = BUILD_PIPELINE_ORDER.index(current)
    return (
        index + 1 < len(BUILD_PIPELINE_ORDER)
        and BUILD_PIPELINE_ORDER[index + 1] == target
    )


class BuildTrigger(str, Enum):
    """What started a build."""

    MANUAL = "manual"
    DEPLOYMENT = "deployment"
    GIT_PUSH = "git-push"
    WEBHOOK = "webhook"
    RETRY = "retry"
    ROLLBACK = "rollback"


class ArtifactType(str, Enum):
    """Kinds of packaged build output."""

    BUILD = "build"
    SOURCE = "source"


class Artifact(BaseModel):
    """A packaged, hashed output of a build."""

    type: ArtifactType
    path: str = Field(..., description="Storage path of the archive")
    size_bytes: int = Field(..., ge=0, description="Archive size in bytes")
    sha256: str = Field(..., min_length=64, description="SHA-256 of the archive")
    created_at: datetime = Field(default_factory=utcnow)


class Build(BaseModel):
    """One execution of the build pipeline.

    Attributes:
        id: Build identifier
        project_id: Project being built
        deployment_id: Deployment that requested the build, if any
        status: Current pipeline status
        branch: Branch to build
        commit_sha: Commit to check out (resolved to HEAD after clone if unset)
        trigger: What started the build
        user_id: Caller identity for audit attribution
        build_config: Build settings snapshot used for this run
        logs: Structured log lines, in arrival order
        artifacts: Packaged outputs
        cache_key: Cache key computed after clone
        cache_hit: Whether install/build were skipped thanks to the cache
        retry_count: How many retries preceded this build
        retried_from_id: Build this one retries, if any
    """

    id: str = Field(default_factory=new_id)
    project_id: str
    deployment_id: str | None = None
    status: BuildStatus = BuildStatus.PENDING
    branch: str = "main"
    commit_sha: str | None = None
    trigger: BuildTrigger = BuildTrigger.MANUAL
    user_id: str | None = None
    build_config: BuildSettings = Field(default_factory=BuildSettings)
    logs: list[LogEntry] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    cache_key: str | None = None
    cache_hit: bool = False
    retry_count: int = 0
    retried_from_id: str | None = None
    exit_code: int | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None

    @property
    def size_bytes(self) -> int:
        """Total size of all artifacts."""
        return sum(artifact.size_bytes for artifact in self.artifacts)
