"""Pydantic models for deployments and the provider adapter contract.

This module defines the Deployment record owned by the orchestrator, the
deployment state machine, and the value types exchanged with provider
adapters (requests, results, status snapshots, webhook validation).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from clouddeck.models.build import Artifact, LogEntry, new_id, utcnow
from clouddeck.models.project import Project


class DeploymentStatus(str, Enum):
    """Deployment lifecycle states."""

    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    RUNNING = "running"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether the deployment can no longer change status."""
        return self in DEPLOYMENT_TERMINAL_STATES


DEPLOYMENT_TERMINAL_STATES = frozenset(
    {
        DeploymentStatus.RUNNING,
        DeploymentStatus.FAILED,
        DeploymentStatus.ROLLED_BACK,
        DeploymentStatus.CANCELLED,
    }
)

CANCELLABLE_STATES = frozenset(
    {DeploymentStatus.PENDING, DeploymentStatus.BUILDING, DeploymentStatus.DEPLOYING}
)

# Statuses an adapter may report; ``cancelled`` is an orchestrator-only state.
PROVIDER_STATUSES = frozenset(
    {
        DeploymentStatus.PENDING,
        DeploymentStatus.BUILDING,
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.RUNNING,
        DeploymentStatus.FAILED,
        DeploymentStatus.ROLLED_BACK,
    }
)

DEPLOYMENT_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    # pending -> deploying is used by promotions, which reuse an existing build
    DeploymentStatus.PENDING: frozenset(
        {
            DeploymentStatus.BUILDING,
            DeploymentStatus.DEPLOYING,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
        }
    ),
    DeploymentStatus.BUILDING: frozenset(
        {
            DeploymentStatus.DEPLOYING,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLED_BACK,
            DeploymentStatus.CANCELLED,
        }
    ),
    DeploymentStatus.DEPLOYING: frozenset(
        {
            DeploymentStatus.RUNNING,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLED_BACK,
            DeploymentStatus.CANCELLED,
        }
    ),
}


def can_transition_deployment(
    current: DeploymentStatus, target: DeploymentStatus
) -> bool:
    """Check a deployment status transition against the state machine."""
    return target in DEPLOYMENT_TRANSITIONS.get(current, frozenset())


class Environment(str, Enum):
    """Deployment target environments."""

    PRODUCTION = "production"
    STAGING = "staging"
    PREVIEW = "preview"


class DeploymentTrigger(str, Enum):
    """What requested a deployment."""

    MANUAL = "manual"
    API = "api"
    GIT_PUSH = "git-push"
    PULL_REQUEST = "pull-request"
    ROLLBACK = "rollback"
    PROMOTION = "promotion"


class DeploymentType(str, Enum):
    """Deployment lineage kind."""

    STANDARD = "standard"
    ROLLBACK = "rollback"
    PROMOTION = "promotion"
    PREVIEW = "preview"


class DeployConfig(BaseModel):
    """Per-call deployment configuration overriding project settings.

    Attributes:
        name: Provider-side site/service name
        branch: Branch to deploy
        build_command: Build command override
        output_directory: Output directory override
        framework: Framework identifier
        root_directory: App directory inside the repository
        start_command: Start command for server providers (Render)
        env: Environment variables passed to the provider
        site_id: Existing Netlify site
        service_id: Existing Render service
        owner_id: Render owner used when creating a service
        plan: Provider plan name
        clear_cache: Ask the provider to clear its build cache
        region: Preferred provider region
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    branch: str | None = None
    build_command: str | None = None
    output_directory: str | None = None
    framework: str | None = None
    root_directory: str | None = None
    start_command: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    site_id: str | None = None
    service_id: str | None = None
    owner_id: str | None = None
    plan: str | None = None
    clear_cache: bool = False
    region: str | None = None


class ProviderMetadata(BaseModel):
    """Provider-assigned identifiers recorded on a deployment."""

    project_id: str | None = None
    site_id: str | None = None
    service_id: str | None = None
    domain_name: str | None = None
    region: str | None = None
    additional: dict[str, Any] = Field(default_factory=dict)


class PreviewInfo(BaseModel):
    """Pull/merge request details for preview deployments."""

    number: int | None = None
    title: str | None = None
    source_branch: str | None = None
    target_branch: str | None = None


class Deployment(BaseModel):
    """The unit presented to users as "live or not".

    Rollbacks and promotions create new records referencing older ones;
    history is never rewritten in place.
    """

    id: str = Field(default_factory=new_id)
    project_id: str
    environment: Environment = Environment.PRODUCTION
    status: DeploymentStatus = DeploymentStatus.PENDING
    provider: str
    provider_deployment_id: str | None = None
    provider_metadata: ProviderMetadata = Field(default_factory=ProviderMetadata)
    url: str | None = None
    build_id: str | None = None
    branch: str = "main"
    commit_sha: str | None = None
    git_author: str | None = None
    commit_message: str | None = None
    trigger: DeploymentTrigger = DeploymentTrigger.MANUAL
    deployment_type: DeploymentType = DeploymentType.STANDARD
    config: DeployConfig = Field(default_factory=DeployConfig)
    canary: bool = False
    canary_percentage: int | None = Field(default=None, ge=0, le=100)
    rollback_from_id: str | None = None
    rollback_reason: str | None = None
    promoted_from_id: str | None = None
    previous_deployment_id: str | None = None
    preview: PreviewInfo | None = None
    error_message: str | None = None
    created_by: str | None = None
    logs: list[LogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None


# ---------------------------------------------------------------------------
# Adapter contract types
# ---------------------------------------------------------------------------


class DeploymentRequest(BaseModel):
    """Everything an adapter needs to create a provider deployment."""

    project: Project
    config: DeployConfig = Field(default_factory=DeployConfig)
    deployment_id: str | None = None
    commit_sha: str | None = None
    artifacts: list[Artifact] = Field(default_factory=list)

    @property
    def branch(self) -> str:
        """Branch to deploy, falling back to the repository default."""
        return self.config.branch or self.project.repository.branch

    @property
    def name(self) -> str:
        """Provider-side name, falling back to the project name."""
        return self.config.name or self.project.name


class DeploymentResult(BaseModel):
    """Normalized result of creating (or listing) a provider deployment."""

    provider: str
    provider_deployment_id: str
    url: str | None = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeploymentStatusResult(BaseModel):
    """Normalized provider status snapshot."""

    status: DeploymentStatus
    progress: int = Field(default=0, ge=0, le=100)
    url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeploymentLogs(BaseModel):
    """A page of provider-side deployment logs."""

    logs: list[LogEntry] = Field(default_factory=list)
    has_more: bool = False


class CancelResult(BaseModel):
    """Outcome of a provider cancellation request."""

    success: bool
    message: str = ""


class ConnectResult(BaseModel):
    """Outcome of connecting a provider account."""

    connected: bool
    message: str = ""
    account_info: dict[str, Any] = Field(default_factory=dict)


class DisconnectResult(BaseModel):
    """Outcome of disconnecting a provider account."""

    success: bool


class WebhookValidationResult(BaseModel):
    """Signature check outcome plus the parsed payload when valid."""

    valid: bool
    payload: dict[str, Any] | None = None
    error: str | None = None


class ProviderEvent(BaseModel):
    """Deployment status change extracted from a provider webhook."""

    provider_deployment_id: str
    state: str = Field(..., description="Provider-native state string")
    status: DeploymentStatus = Field(..., description="Normalized status")
    url: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
