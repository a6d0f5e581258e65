"""Request and response models for the CloudDeck HTTP API."""

from __future__ import annotations

from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from clouddeck.models.deployment import DeployConfig, Environment

ItemT = TypeVar("ItemT")


class ServerState(str, Enum):
    """Lifecycle states of the HTTP server."""

    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    ready: bool
    projects: int = 0
    active_builds: int = 0
    uptime_seconds: float = 0.0


class ProblemDetail(BaseModel):
    """RFC 7807 problem details body."""

    type: str = "about:blank"
    title: str
    status: int
    detail: str | None = None
    instance: str | None = None


class CreateDeploymentRequest(BaseModel):
    """Body of ``POST /deployments``."""

    project_id: str = Field(..., min_length=1)
    environment: Environment = Environment.PRODUCTION
    provider: str | None = None
    branch: str | None = None
    commit_sha: str | None = None
    config: DeployConfig | None = None
    git_author: str | None = None
    commit_message: str | None = None
    canary_percentage: int | None = Field(default=None, ge=0, le=100)


class RollbackRequest(BaseModel):
    """Body of ``POST /deployments/{id}/rollback``."""

    reason: str | None = None


class PromoteRequest(BaseModel):
    """Body of ``POST /deployments/{id}/promote``."""

    target_environment: Environment


class ConnectProviderRequest(BaseModel):
    """Body of ``POST /providers/{provider}/connect``."""

    credentials: dict[str, Any] = Field(default_factory=dict)


class DisconnectProviderRequest(BaseModel):
    """Body of ``POST /providers/{provider}/disconnect``."""

    account_id: str


class Page(BaseModel, Generic[ItemT]):
    """A page of list results."""

    items: list[ItemT]
    total: int
    limit: int
    offset: int
