"""Pydantic models for platform configuration.

Each provider adapter receives its own configuration object; nothing here is
a process-wide singleton.
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator

from clouddeck.models.project import Project


class RetryConfig(BaseModel):
    """Retry policy for outbound provider HTTP calls.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Delay before the second attempt; doubles each attempt
        max_delay: Upper bound for a single delay
    """

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=10, description="Total attempts")
    base_delay: float = Field(default=1.0, ge=0, description="Base delay in seconds")
    max_delay: float = Field(default=30.0, ge=0, description="Maximum delay in seconds")


class ProviderConfig(BaseModel):
    """Settings shared by all provider adapters."""

    model_config = ConfigDict(extra="forbid")

    api_base: str = Field(..., description="Provider REST API base URL")
    webhook_secret: str | None = Field(
        default=None, description="Secret used to sign webhooks", repr=False
    )
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")
    retry: RetryConfig = Field(default_factory=RetryConfig)


class VercelConfig(ProviderConfig):
    """Vercel adapter configuration.

    Attributes:
        token: Vercel API token
        team_id: Optional team scope for all API calls
    """

    api_base: str = Field(default="https://api.vercel.com")
    token: str | None = Field(default=None, description="API token", repr=False)
    team_id: str | None = Field(default=None, description="Team scope")


class NetlifyConfig(ProviderConfig):
    """Netlify adapter configuration."""

    api_base: str = Field(default="https://api.netlify.com/api/v1")
    token: str | None = Field(default=None, description="API token", repr=False)


class RenderConfig(ProviderConfig):
    """Render adapter configuration."""

    api_base: str = Field(default="https://api.render.com/v1")
    api_key: str | None = Field(default=None, description="API key", repr=False)


class ProvidersConfig(BaseModel):
    """Configuration for every supported provider."""

    model_config = ConfigDict(extra="forbid")

    vercel: VercelConfig = Field(default_factory=VercelConfig)
    netlify: NetlifyConfig = Field(default_factory=NetlifyConfig)
    render: RenderConfig = Field(default_factory=RenderConfig)


class GitWebhookConfig(BaseModel):
    """Secrets for inbound git provider webhooks."""

    model_config = ConfigDict(extra="forbid")

    github_secret: str | None = Field(default=None, repr=False)
    gitlab_secret: str | None = Field(default=None, repr=False)
    bitbucket_secret: str | None = Field(default=None, repr=False)

    def secret_for(self, provider: str) -> str | None:
        """Return the configured secret for a git provider name."""
        return getattr(self, f"{provider.lower()}_secret", None)


class PlatformConfig(BaseModel):
    """Top-level CloudDeck configuration.

    Attributes:
        workspace_dir: Root for per-build working directories
        artifacts_dir: Root for packaged artifacts
        state_path: Optional JSON snapshot of builds and deployments
        max_workers: Size of the deployment worker pool
        build_poll_interval: Seconds between build completion checks
        build_timeout: Wall-clock limit for a build, seen from a deployment
        command_timeout: Wall-clock limit for a single build subprocess
        provider_poll_interval: Seconds between provider status checks
        provider_poll_timeout: How long to watch a provider after creation (0 = off)
        default_provider: Provider used when neither request nor project names one
        providers: Provider adapter settings
        git: Inbound git webhook secrets
        projects: Statically declared projects
    """

    model_config = ConfigDict(extra="forbid")

    workspace_dir: str = Field(default=".clouddeck/builds")
    artifacts_dir: str = Field(default=".clouddeck/artifacts")
    state_path: str | None = Field(default=None)
    max_workers: int = Field(default=4, ge=1, le=64)
    build_poll_interval: float = Field(default=5.0, gt=0)
    build_timeout: float = Field(default=600.0, gt=0)
    command_timeout: float = Field(default=900.0, gt=0)
    provider_poll_interval: float = Field(default=10.0, gt=0)
    provider_poll_timeout: float = Field(default=0.0, ge=0)
    default_provider: str = Field(default="vercel")
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    git: GitWebhookConfig = Field(default_factory=GitWebhookConfig)
    projects: list[Project] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_projects(self) -> "PlatformConfig":
        """Validate that project identifiers are unique."""
        seen: set[str] = set()
        for project in self.projects:
            if project.id in seen:
                raise ValueError(f"Duplicate project id: {project.id}")
            seen.add(project.id)
        return self
