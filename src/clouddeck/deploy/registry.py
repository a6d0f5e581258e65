"""Provider adapter registry and shared retry helper."""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

import requests

from clouddeck.lib.errors import TransientProviderError, UnknownProviderError
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.config import PlatformConfig, ProvidersConfig
from clouddeck.models.deployment import (
    CancelResult,
    ConnectResult,
    DeploymentLogs,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    DeploymentStatusResult,
    DisconnectResult,
    WebhookValidationResult,
)

if TYPE_CHECKING:
    from clouddeck.deploy.adapters.base import BaseAdapter

logger = get_logger(__name__)

T = TypeVar("T")


class Provider(str, Enum):
    """Supported hosting providers."""

    VERCEL = "vercel"
    NETLIFY = "netlify"
    RENDER = "render"

    @classmethod
    def parse(cls, name: str | None) -> Provider:
        """Resolve a provider name case-insensitively.

        Raises:
            UnknownProviderError: If the name is empty or not supported
        """
        normalized = (name or "").strip().lower()
        for provider in cls:
            if provider.value == normalized:
                return provider
        raise UnknownProviderError(name, [p.value for p in cls])


def retry_with_backoff(
    fn: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` and retry transient provider failures with exponential backoff.

    The delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``, capped
    at ``max_delay``. A ``Retry-After`` hint from the provider is honored when
    it asks for a longer wait. Any other exception propagates immediately.

    Args:
        fn: Zero-argument callable performing one attempt
        max_attempts: Total attempts including the first
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for a single delay
        sleep: Sleep function (injectable for tests)

    Returns:
        The value returned by ``fn``

    Raises:
        TransientProviderError: If every attempt failed transiently
    """
    attempt = 1
    while True:
        try:
            return fn()
        except TransientProviderError as e:
            if attempt >= max_attempts:
                logger.warning(
                    f"{e.provider} {e.operation} failed after {attempt} attempt(s)"
                )
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            if e.retry_after is not None:
                delay = max(delay, min(e.retry_after, max_delay))
            logger.debug(
                f"{e.provider} {e.operation} attempt {attempt} failed ({e.message}); "
                f"retrying in {delay:g}s"
            )
            sleep(delay)
            attempt += 1


class AdapterRegistry:
    """Resolves provider names to adapter instances.

    Adapters are constructed once from their own configuration objects when
    first requested. The registry also exposes provider-agnostic operations so
    callers never need to hold an adapter directly.
    """

    def __init__(
        self,
        providers: ProvidersConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            providers: Per-provider configuration
            session: Optional shared HTTP session handed to every adapter
        """
        self._providers = providers or ProvidersConfig()
        self._session = session
        self._adapters: dict[Provider, BaseAdapter] = {}

    @classmethod
    def from_config(
        cls, config: PlatformConfig, session: requests.Session | None = None
    ) -> AdapterRegistry:
        """Create a registry from platform configuration."""
        return cls(config.providers, session=session)

    @staticmethod
    def supported_providers() -> list[str]:
        """Return the names of all supported providers."""
        return [provider.value for provider in Provider]

    def register(self, name: str, adapter: BaseAdapter) -> None:
        """Install an adapter instance for a supported provider.

        Only members of :class:`Provider` can be registered.
        """
        self._adapters[Provider.parse(name)] = adapter

    def get_adapter(self, name: str | None) -> BaseAdapter:
        """Return the adapter for a provider name.

        Raises:
            UnknownProviderError: If the name does not resolve
        """
        provider = Provider.parse(name)
        adapter = self._adapters.get(provider)
        if adapter is None:
            adapter = self._create_adapter(provider)
            self._adapters[provider] = adapter
        return adapter

    def _create_adapter(self, provider: Provider) -> BaseAdapter:
        if provider == Provider.VERCEL:
            from clouddeck.deploy.adapters.vercel import VercelAdapter

            return VercelAdapter(self._providers.vercel, session=self._session)

        if provider == Provider.NETLIFY:
            from clouddeck.deploy.adapters.netlify import NetlifyAdapter

            return NetlifyAdapter(self._providers.netlify, session=self._session)

        if provider == Provider.RENDER:
            from clouddeck.deploy.adapters.render import RenderAdapter

            return RenderAdapter(self._providers.render, session=self._session)

        raise UnknownProviderError(provider.value, self.supported_providers())

    # Provider-agnostic operations

    def create_deployment(
        self, provider: str, request: DeploymentRequest
    ) -> DeploymentResult:
        """Create a deployment on the named provider."""
        return self.get_adapter(provider).create_deployment(request)

    def get_deployment_status(
        self, provider: str, provider_deployment_id: str
    ) -> DeploymentStatusResult:
        """Fetch normalized status from the named provider."""
        return self.get_adapter(provider).get_deployment_status(provider_deployment_id)

    def get_deployment_logs(
        self,
        provider: str,
        provider_deployment_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> DeploymentLogs:
        """Fetch a page of provider-side logs."""
        return self.get_adapter(provider).get_deployment_logs(
            provider_deployment_id, limit=limit, offset=offset
        )

    def list_deployments(
        self,
        provider: str,
        project_ref: str,
        limit: int = 10,
        offset: int = 0,
        status: DeploymentStatus | None = None,
    ) -> list[DeploymentResult]:
        """List deployments known to the named provider."""
        return self.get_adapter(provider).list_deployments(
            project_ref, limit=limit, offset=offset, status=status
        )

    def cancel_deployment(
        self, provider: str, provider_deployment_id: str
    ) -> CancelResult:
        """Cancel a deployment on the named provider."""
        return self.get_adapter(provider).cancel_deployment(provider_deployment_id)

    def validate_webhook(
        self, provider: str, signature: str | None, body: bytes
    ) -> WebhookValidationResult:
        """Validate a provider webhook signature."""
        return self.get_adapter(provider).validate_webhook(signature, body)

    def connect_account(
        self, provider: str, credentials: dict[str, Any]
    ) -> ConnectResult:
        """Verify provider credentials."""
        return self.get_adapter(provider).connect_account(credentials)

    def disconnect_account(self, provider: str, account_id: str) -> DisconnectResult:
        """Disconnect a provider account."""
        return self.get_adapter(provider).disconnect_account(account_id)
