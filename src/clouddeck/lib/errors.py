"""Custom exception hierarchy for CloudDeck orchestration and provider calls."""

from __future__ import annotations


class CloudDeckError(Exception):
    """Base exception for all CloudDeck errors.

    All CloudDeck-specific exceptions inherit from this class, enabling
    centralized exception handling in the HTTP layer and the CLI.
    """

    pass


class ConfigurationError(CloudDeckError):
    """Exception raised for configuration errors.

    Configuration errors are fatal and never retried: an unknown provider
    name or a missing credential will not fix itself on the next attempt.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigurationError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class UnknownProviderError(ConfigurationError):
    """Raised when a provider name does not resolve to a registered adapter."""

    def __init__(self, provider: str | None, supported: list[str]) -> None:
        """Create an unknown provider error listing the supported names."""
        self.provider = provider
        self.supported = supported
        super().__init__(
            "provider",
            f"Unknown deployer provider: {provider}. "
            f"Supported: {', '.join(supported)}",
        )


class MissingCredentialsError(ConfigurationError):
    """Raised when a provider adapter is used without its credentials."""

    def __init__(self, provider: str, setting: str) -> None:
        """Create a missing credentials error for a provider setting."""
        self.provider = provider
        self.setting = setting
        super().__init__(
            f"providers.{provider}.{setting}", f"{setting} is not configured"
        )


class ProviderError(CloudDeckError):
    """Exception raised when a hosting provider call fails.

    Attributes:
        provider: Provider name (vercel, netlify, render)
        operation: Adapter operation that failed
        message: Human-readable error message
    """

    def __init__(self, provider: str, operation: str, message: str) -> None:
        """Initialize ProviderError with provider and operation context.

        Args:
            provider: Provider name
            operation: Adapter operation (e.g. create_deployment)
            message: Descriptive error message
        """
        self.provider = provider
        self.operation = operation
        self.message = message
        super().__init__(f"{provider} {operation} failed: {message}")


class TransientProviderError(ProviderError):
    """Network failure, timeout, 5xx or rate limit response from a provider.

    These are the only errors retried by ``retry_with_backoff``.

    Attributes:
        status_code: HTTP status code, if a response was received
        retry_after: Seconds the provider asked us to wait, if any
    """

    def __init__(
        self,
        provider: str,
        operation: str,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        """Create a transient provider error."""
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(provider, operation, message)


class ProviderAPIError(ProviderError):
    """Provider rejected the request with a 4xx client error."""

    def __init__(
        self, provider: str, operation: str, status_code: int, detail: str | None
    ) -> None:
        """Create a provider API error from an HTTP status and detail."""
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP {status_code}"
        if detail:
            message += f": {detail}"
        super().__init__(provider, operation, message)


class ValidationError(CloudDeckError):
    """Exception raised for rejected input such as malformed webhook payloads.

    Attributes:
        field: The field or input that failed validation
        message: Description of the validation failure
    """

    def __init__(self, field: str, message: str) -> None:
        """Initialize ValidationError with field and message."""
        self.field = field
        self.message = message
        super().__init__(f"Validation error in '{field}': {message}")


class WebhookSignatureError(ValidationError):
    """Raised when a webhook signature is missing or does not match."""

    def __init__(self, provider: str) -> None:
        """Create a signature error for a webhook source."""
        self.provider = provider
        super().__init__("signature", f"Invalid webhook signature from {provider}")


class WebhookPayloadError(ValidationError):
    """Raised when a webhook body cannot be parsed or lacks required fields."""

    def __init__(self, provider: str, message: str) -> None:
        """Create a payload error for a webhook source."""
        self.provider = provider
        super().__init__("payload", f"{provider}: {message}")


class StateConflictError(CloudDeckError):
    """Raised when an action is not valid for an entity's current status.

    Attributes:
        entity: Entity kind (build, deployment)
        entity_id: Entity identifier
        status: Current status of the entity
        action: The rejected action
    """

    def __init__(self, entity: str, entity_id: str, status: str, action: str) -> None:
        """Create a state conflict error."""
        self.entity = entity
        self.entity_id = entity_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} {entity} {entity_id} in current status '{status}'"
        )


class NotFoundError(CloudDeckError):
    """Raised when a project, build or deployment does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        """Create a not-found error."""
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class DeployLockedError(CloudDeckError):
    """Raised when a deployment is requested for a locked project."""

    def __init__(self, project_id: str, reason: str | None) -> None:
        """Create a deploy lock error carrying the lock reason."""
        self.project_id = project_id
        self.reason = reason or ""
        message = f"Deployments are locked for project {project_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class BuildError(CloudDeckError):
    """Exception raised when a build step fails.

    Attributes:
        build_id: Identifier of the failing build
        message: Human-readable error message
    """

    def __init__(self, build_id: str, message: str) -> None:
        """Create a build error."""
        self.build_id = build_id
        self.message = message
        super().__init__(message)


class CommandFailedError(BuildError):
    """A build subprocess exited with a non-zero status."""

    def __init__(
        self, build_id: str, command: list[str], exit_code: int, stderr_tail: str
    ) -> None:
        """Create a command failure error with the tail of stderr."""
        self.command = command
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"Command failed with code {exit_code}: {command[0]}"
        if stderr_tail:
            message += f"\n{stderr_tail}"
        super().__init__(build_id, message)


class BuildTimeoutError(BuildError):
    """A build or build step exceeded its wall-clock deadline."""

    def __init__(self, build_id: str, timeout: float) -> None:
        """Create a timeout error for a build."""
        self.timeout = timeout
        super().__init__(build_id, f"Build {build_id} timed out after {timeout:g}s")


class BuildCancelledError(BuildError):
    """The build was cancelled while a step was running."""

    def __init__(self, build_id: str) -> None:
        """Create a cancellation marker error."""
        super().__init__(build_id, f"Build {build_id} was cancelled")


class DeploymentError(CloudDeckError):
    """Exception raised when a deployment operation fails.

    Attributes:
        operation: Operation that failed (deploy, rollback, promote, state)
        message: Human-readable error message
    """

    def __init__(self, operation: str, message: str) -> None:
        """Create a deployment error."""
        self.operation = operation
        self.message = message
        super().__init__(f"Deployment {operation} failed: {message}")
