"""Base contract for hosting provider adapters."""

from __future__ import annotations

import contextlib
import hashlib
import io
import json
import tarfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any, ClassVar

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import Timeout

from clouddeck.deploy.registry import retry_with_backoff
from clouddeck.deploy.signatures import SignatureScheme, verify_signature
from clouddeck.lib.errors import (
    DeploymentError,
    MissingCredentialsError,
    ProviderAPIError,
    TransientProviderError,
    WebhookPayloadError,
)
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.build import Artifact, ArtifactType, LogEntry, LogLevel
from clouddeck.models.config import ProviderConfig
from clouddeck.models.deployment import (
    CancelResult,
    ConnectResult,
    DeploymentLogs,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    DeploymentStatusResult,
    DisconnectResult,
    ProviderEvent,
    WebhookValidationResult,
)

logger = get_logger(__name__)

# Vocabulary shared by most providers; adapters extend it with their own states.
BASE_STATUS_MAP: dict[str, DeploymentStatus] = {
    "queued": DeploymentStatus.PENDING,
    "building": DeploymentStatus.BUILDING,
    "deploying": DeploymentStatus.DEPLOYING,
    "ready": DeploymentStatus.RUNNING,
    "running": DeploymentStatus.RUNNING,
    "error": DeploymentStatus.FAILED,
    "failed": DeploymentStatus.FAILED,
    "canceled": DeploymentStatus.ROLLED_BACK,
}


class BaseAdapter(ABC):
    """Abstract base class for provider adapters.

    Subclasses translate the uniform deployment contract into one provider's
    REST API. Callers above this layer only ever see the normalized
    ``DeploymentStatus`` vocabulary.
    """

    name: ClassVar[str]
    signature_scheme: ClassVar[SignatureScheme]
    status_map: ClassVar[dict[str, DeploymentStatus]] = BASE_STATUS_MAP

    def __init__(
        self,
        config: ProviderConfig,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the adapter.

        Args:
            config: This provider's configuration
            session: HTTP session (a new one is created if omitted)
            sleep: Sleep function used between retries
        """
        self.config = config
        self.base_url = config.api_base.rstrip("/")
        self._session = session or requests.Session()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    def create_deployment(self, request: DeploymentRequest) -> DeploymentResult:
        """Create a deployment on the provider.

        Args:
            request: Project snapshot, per-call configuration and artifacts

        Returns:
            DeploymentResult with the provider deployment id and URL

        Raises:
            MissingCredentialsError: If the provider credential is not configured
            ProviderError: If the provider call fails
        """

    @abstractmethod
    def get_deployment_status(
        self, provider_deployment_id: str
    ) -> DeploymentStatusResult:
        """Return the normalized status of a provider deployment."""

    @abstractmethod
    def get_deployment_logs(
        self, provider_deployment_id: str, limit: int = 50, offset: int = 0
    ) -> DeploymentLogs:
        """Return a page of provider-side logs."""

    @abstractmethod
    def list_deployments(
        self,
        project_ref: str,
        limit: int = 10,
        offset: int = 0,
        status: DeploymentStatus | None = None,
    ) -> list[DeploymentResult]:
        """List deployments for a provider-side project, site or service."""

    @abstractmethod
    def cancel_deployment(self, provider_deployment_id: str) -> CancelResult:
        """Cancel a deployment on the provider."""

    @abstractmethod
    def connect_account(self, credentials: dict[str, Any]) -> ConnectResult:
        """Verify account credentials against the provider."""

    @abstractmethod
    def disconnect_account(self, account_id: str) -> DisconnectResult:
        """Disconnect a provider account."""

    def validate_webhook(
        self, signature: str | None, body: bytes
    ) -> WebhookValidationResult:
        """Validate a webhook signature over the raw body and parse the payload.

        Args:
            signature: Value of this provider's signature header
            body: Raw request body exactly as received

        Returns:
            WebhookValidationResult; ``payload`` is set only when valid
        """
        scheme = self.signature_scheme
        headers = {scheme.header: signature} if signature else {}
        if not verify_signature(scheme, self.config.webhook_secret, body, headers):
            return WebhookValidationResult(valid=False, error="invalid signature")
        try:
            payload = json.loads(body)
        except ValueError:
            return WebhookValidationResult(valid=False, error="malformed JSON body")
        if not isinstance(payload, dict):
            return WebhookValidationResult(
                valid=False, error="payload is not an object"
            )
        return WebhookValidationResult(valid=True, payload=payload)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def normalize_status(self, native: str | None) -> DeploymentStatus:
        """Map a provider-native status string to the platform vocabulary.

        Unknown or missing values map to ``pending``.
        """
        if not native:
            return DeploymentStatus.PENDING
        return self.status_map.get(native.lower(), DeploymentStatus.PENDING)

    def extract_webhook_event(self, payload: dict[str, Any]) -> ProviderEvent:
        """Extract a status change from a validated webhook payload.

        The generic form is ``{"deploymentId": ..., "state": ...}``; adapters
        override this to understand their provider's native payloads.

        Raises:
            WebhookPayloadError: If no deployment id or state can be found
        """
        deployment_id = payload.get("deploymentId") or payload.get("id")
        state = payload.get("state") or payload.get("status")
        if not deployment_id or not state:
            raise WebhookPayloadError(self.name, "missing deployment id or state")
        return ProviderEvent(
            provider_deployment_id=str(deployment_id),
            state=str(state),
            status=self.normalize_status(str(state)),
            url=payload.get("url"),
            error_message=payload.get("errorMessage"),
        )

    @property
    def credential(self) -> str | None:
        """The configured API credential, if any."""
        return getattr(self.config, "token", None)

    def _require_credential(self, setting: str = "token") -> str:
        credential = self.credential
        if not credential:
            raise MissingCredentialsError(self.name, setting)
        return credential

    def _headers(self, token: str | None = None) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token or self.credential or ''}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _default_params(self) -> dict[str, Any]:
        return {}

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        token: str | None = None,
    ) -> Any:
        """Execute an API call with retries and error mapping.

        Returns:
            Decoded JSON body (``{}`` for empty responses)

        Raises:
            TransientProviderError: Network failure, timeout, 429 or 5xx after retries
            ProviderAPIError: Any other non-2xx response
        """
        retry = self.config.retry
        return retry_with_backoff(
            lambda: self._send(
                method,
                path,
                operation,
                params=params,
                json_body=json_body,
                data=data,
                headers=headers,
                token=token,
            ),
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            sleep=self._sleep,
        )

    def _send(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        token: str | None = None,
    ) -> Any:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        query = {**self._default_params(), **(params or {})}
        request_headers = self._headers(token)
        if data is not None:
            request_headers["Content-Type"] = "application/octet-stream"
        request_headers.update(headers or {})
        try:
            response = self._session.request(
                method=method,
                url=url,
                params=query or None,
                json=json_body,
                data=data,
                headers=request_headers,
                timeout=self.config.timeout,
            )
        except Timeout as e:
            raise TransientProviderError(
                self.name, operation, f"Request to {url} timed out"
            ) from e
        except RequestsConnectionError as e:
            raise TransientProviderError(
                self.name, operation, f"Could not connect to {url}"
            ) from e

        status_code = response.status_code
        if status_code == 429 or status_code >= 500:
            retry_after = None
            with contextlib.suppress(TypeError, ValueError):
                retry_after = float(response.headers.get("Retry-After"))
            raise TransientProviderError(
                self.name,
                operation,
                f"HTTP {status_code}",
                status_code=status_code,
                retry_after=retry_after,
            )

        if not response.ok:
            raise ProviderAPIError(
                self.name, operation, status_code, self._error_detail(response)
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    @staticmethod
    def _error_detail(response: requests.Response) -> str | None:
        detail = None
        with contextlib.suppress(Exception):
            data = response.json()
            error = data.get("error")
            if isinstance(error, dict):
                detail = error.get("message")
            else:
                detail = data.get("message") or error
        return detail

    @staticmethod
    def _page(
        logs: list[LogEntry], limit: int, offset: int
    ) -> DeploymentLogs:
        return DeploymentLogs(
            logs=logs[offset : offset + limit],
            has_more=len(logs) > offset + limit,
        )

    @staticmethod
    def _log_level(value: str | None) -> LogLevel:
        value = (value or "").lower()
        if value in ("error", "stderr", "fatal"):
            return LogLevel.ERROR
        if value in ("warn", "warning"):
            return LogLevel.WARN
        return LogLevel.INFO

    @classmethod
    def _log_entry(
        cls, timestamp: Any, level: str | None, message: str | None
    ) -> LogEntry:
        # Providers send epoch milliseconds or ISO strings; pydantic parses both
        fields: dict[str, Any] = {
            "level": cls._log_level(level),
            "message": message or "",
        }
        if timestamp is not None:
            fields["timestamp"] = timestamp
        return LogEntry(**fields)

    @staticmethod
    def _filter_status(
        results: list[DeploymentResult], status: DeploymentStatus | None
    ) -> list[DeploymentResult]:
        if status is None:
            return results
        return [result for result in results if result.status == status]


def flatten_env(env: dict[str, str]) -> list[dict[str, str]]:
    """Render an env mapping as the ``[{key, value}]`` list providers expect."""
    return [{"key": key, "value": value} for key, value in sorted(env.items())]


def read_build_artifact(artifacts: list[Artifact]) -> dict[str, bytes] | None:
    """Return the files of the packaged build output keyed by relative path.

    The archive is checked against the digest recorded when it was built, so
    a promotion never publishes a bundle that changed on disk.

    Args:
        artifacts: Artifacts handed to the adapter

    Returns:
        Sorted mapping of POSIX path to file contents, or None when no build
        archive was handed over

    Raises:
        DeploymentError: If the archive is missing, corrupt or was modified
    """
    artifact = next((a for a in artifacts if a.type == ArtifactType.BUILD), None)
    if artifact is None:
        return None

    try:
        raw = Path(artifact.path).read_bytes()
    except OSError as e:
        raise DeploymentError(
            "upload", f"Build artifact {artifact.path} is not readable: {e}"
        ) from e
    if hashlib.sha256(raw).hexdigest() != artifact.sha256:
        raise DeploymentError(
            "upload", f"Build artifact {artifact.path} does not match its digest"
        )

    files: dict[str, bytes] = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(raw), mode="r:gz") as tar:
            for member in tar.getmembers():
                handle = tar.extractfile(member) if member.isfile() else None
                if handle is not None:
                    files[member.name] = handle.read()
    except (tarfile.TarError, OSError) as e:
        raise DeploymentError(
            "upload", f"Build artifact {artifact.path} is corrupt: {e}"
        ) from e
    if not files:
        raise DeploymentError("upload", f"Build artifact {artifact.path} is empty")
    return dict(sorted(files.items()))
