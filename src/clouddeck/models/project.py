"""Pydantic models for the project snapshot consumed by the orchestrator.

Projects are owned by the settings layer; CloudDeck only reads them. The
models here describe what a build and a deployment need to know about a
project: where its source lives, how to build it, and whether deploys are
currently locked.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GitProvider(str, Enum):
    """Git hosting providers that can trigger deployments."""

    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"


class RepositoryConfig(BaseModel):
    """Source repository location and credentials.

    Attributes:
        url: Clone URL (https or local path)
        provider: Git hosting provider
        branch: Default branch to build
        access_token: Optional token injected into https clone URLs
        public: Whether the repository is public
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(..., description="Repository clone URL")
    provider: GitProvider = Field(
        default=GitProvider.GITHUB, description="Git hosting provider"
    )
    branch: str = Field(default="main", description="Default branch")
    access_token: str | None = Field(
        default=None, description="Access token for private repositories", repr=False
    )
    public: bool = Field(default=False, description="Whether the repository is public")

    @property
    def slug(self) -> str:
        """Return ``owner/name`` derived from the repository URL."""
        parts = self.url.rstrip("/").split("/")
        slug = "/".join(parts[-2:])
        return slug[:-4] if slug.endswith(".git") else slug


class BuildSettings(BaseModel):
    """How a project is built.

    Attributes:
        build_command: Command executed in the workspace root
        install_command: Optional override for dependency installation
        output_directory: Directory expected to exist after the build
        framework: Framework identifier (used for cache keys and providers)
        environment_variables: Variables injected into the build
        include_source: Also package the source tree as an artifact
        root_directory: Subdirectory containing the app, if not the repo root
    """

    model_config = ConfigDict(extra="forbid")

    build_command: str = Field(default="npm run build", description="Build command")
    install_command: str | None = Field(
        default=None, description="Install command override"
    )
    output_directory: str = Field(default="dist", description="Build output directory")
    framework: str | None = Field(default=None, description="Framework identifier")
    environment_variables: dict[str, str] = Field(
        default_factory=dict, description="Build environment variables"
    )
    include_source: bool = Field(
        default=False, description="Package the source tree as a second artifact"
    )
    root_directory: str | None = Field(
        default=None, description="App directory relative to the repository root"
    )

    @field_validator("output_directory", "root_directory")
    @classmethod
    def validate_relative(cls, v: str | None) -> str | None:
        """Reject absolute paths and parent traversal."""
        if v is None:
            return v
        if v.startswith("/") or ".." in v.split("/"):
            raise ValueError(f"Path must be relative to the workspace: {v}")
        return v


class DeployLock(BaseModel):
    """Deploy lock gate set by the settings layer."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Whether deploys are blocked")
    reason: str | None = Field(default=None, description="Why deploys are blocked")
    locked_at: datetime | None = Field(default=None, description="Lock timestamp")
    locked_by: str | None = Field(default=None, description="User who set the lock")


class Project(BaseModel):
    """Read-only project snapshot.

    Attributes:
        id: Project identifier
        name: Human-readable project name (also used as provider site name)
        team_id: Owning team
        repository: Source repository
        build: Build settings
        provider: Default hosting provider
        provider_options: Provider-specific identifiers and options
        deploy_lock: Deploy lock gate
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="Project identifier")
    name: str = Field(..., description="Project name")
    team_id: str | None = Field(default=None, description="Owning team identifier")
    repository: RepositoryConfig = Field(..., description="Source repository")
    build: BuildSettings = Field(
        default_factory=BuildSettings, description="Build settings"
    )
    provider: str | None = Field(default=None, description="Default hosting provider")
    provider_options: dict[str, str | int | bool] = Field(
        default_factory=dict,
        description="Provider identifiers (site_id, service_id, owner_id, ...)",
    )
    deploy_lock: DeployLock = Field(
        default_factory=DeployLock, description="Deploy lock gate"
    )
