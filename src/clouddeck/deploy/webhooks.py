"""Inbound webhook ingestion.

Two sources are handled with different trust models:

* Git providers (GitHub, GitLab, Bitbucket) push and pull request events,
  which trigger new deployments.
* Hosting providers (Vercel, Netlify, Render) status callbacks, which
  reconcile an in-flight deployment found by its provider deployment id.

Signatures are verified over the raw body before anything else happens.
Every webhook is acknowledged, including rejected ones, so senders do not
retry; failures are kept in the store for operators instead.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from clouddeck.config.loader import ProjectCatalog
from clouddeck.deploy.orchestrator import DeploymentOrchestrator
from clouddeck.deploy.registry import AdapterRegistry, Provider
from clouddeck.deploy.signatures import GIT_SCHEMES, get_header, verify_signature
from clouddeck.deploy.state import DeploymentStore
from clouddeck.lib.errors import (
    CloudDeckError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.config import PlatformConfig
from clouddeck.models.deployment import (
    DeploymentTrigger,
    Environment,
    PreviewInfo,
    ProviderEvent,
)
from clouddeck.models.events import WebhookAck, WebhookFailure
from clouddeck.models.project import GitProvider, Project

if TYPE_CHECKING:
    from clouddeck.deploy.adapters.base import BaseAdapter

logger = get_logger(__name__)

# Fallback header some providers use for every event type
GENERIC_SIGNATURE_HEADER = "x-webhook-signature"

# Headers naming the git event type
GIT_EVENT_HEADERS = {
    GitProvider.GITHUB: "x-github-event",
    GitProvider.GITLAB: "x-gitlab-event",
    GitProvider.BITBUCKET: "x-event-key",
}

IGNORED_GIT_EVENTS = frozenset({"ping", "diagnostics:ping"})
IGNORED_PR_ACTIONS = frozenset({"closed", "close", "merge", "fulfilled", "rejected"})
NULL_SHA = "0" * 40

# Raised when a signed payload has fields of the wrong shape or type
PAYLOAD_ERRORS = (
    KeyError,
    IndexError,
    TypeError,
    AttributeError,
    ValueError,
    ValidationError,
)


class GitCommitInfo(BaseModel):
    """Commit a git webhook asks us to deploy."""

    commit: str | None = None
    branch: str
    author: str | None = None
    message: str | None = None
    preview: PreviewInfo | None = None


class WebhookIngestor:
    """Validates webhooks and turns them into orchestrator calls."""

    def __init__(
        self,
        config: PlatformConfig,
        orchestrator: DeploymentOrchestrator,
        registry: AdapterRegistry,
        store: DeploymentStore,
        catalog: ProjectCatalog,
    ) -> None:
        """Initialize the ingestor.

        Args:
            config: Platform configuration (git webhook secrets)
            orchestrator: Receives deploy requests and provider events
            registry: Provider adapters used for signature checks
            store: Keeps the webhook failure log
            catalog: Project snapshots
        """
        self.config = config
        self.orchestrator = orchestrator
        self.registry = registry
        self.store = store
        self.catalog = catalog

    # ------------------------------------------------------------------
    # Hosting provider callbacks
    # ------------------------------------------------------------------

    def handle_provider_webhook(
        self, provider: str, body: bytes, headers: Mapping[str, str]
    ) -> WebhookAck:
        """Reconcile a deployment from a provider status callback.

        Args:
            provider: Provider name from the webhook URL
            body: Raw request body
            headers: Request headers

        Returns:
            Acknowledgement; failures are recorded rather than raised
        """
        provider_deployment_id: str | None = None
        try:
            provider_name = Provider.parse(provider).value
            adapter = self.registry.get_adapter(provider_name)
            signature = get_header(
                headers, adapter.signature_scheme.header
            ) or get_header(headers, GENERIC_SIGNATURE_HEADER)

            validation = adapter.validate_webhook(signature, body)
            if not validation.valid:
                if validation.error == "invalid signature":
                    raise WebhookSignatureError(provider_name)
                raise WebhookPayloadError(provider_name, validation.error or "invalid")

            event = self.extract_provider_event(
                adapter, provider_name, validation.payload or {}
            )
            provider_deployment_id = event.provider_deployment_id
            deployment = self.orchestrator.apply_provider_event(provider_name, event)
        except CloudDeckError as e:
            return self._reject("provider", provider, str(e), provider_deployment_id)
        except Exception as e:
            logger.error(
                f"Unexpected error handling {provider} webhook: {e}", exc_info=True
            )
            return self._reject(
                "provider", provider, "internal error", provider_deployment_id
            )

        self.orchestrator.events.audit(
            f"WEBHOOK_{provider_name.upper()}",
            "deployment",
            deployment.id,
            provider=provider_name,
            state=event.state,
            provider_deployment_id=event.provider_deployment_id,
        )
        logger.info(
            f"Applied {provider_name} webhook to deployment {deployment.id}: "
            f"{event.state} -> {deployment.status.value}"
        )
        return WebhookAck(
            processed=True,
            deployment_id=deployment.id,
            message=f"Deployment is {deployment.status.value}",
        )

    # ------------------------------------------------------------------
    # Git provider events
    # ------------------------------------------------------------------

    def handle_git_webhook(
        self,
        git_provider: str,
        project_id: str,
        body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookAck:
        """Trigger a deployment from a git push or pull request event.

        Pushes to the project's branch deploy to production, pushes to other
        branches deploy to staging, and pull/merge requests deploy previews.
        Pings, tag pushes, branch deletions and closed pull requests are
        acknowledged without deploying.

        Args:
            git_provider: ``github``, ``gitlab`` or ``bitbucket``
            project_id: Project the webhook was registered for
            body: Raw request body
            headers: Request headers

        Returns:
            Acknowledgement carrying the new deployment id when one started
        """
        try:
            source = GitProvider(git_provider.lower())
        except ValueError:
            return self._reject("git", git_provider, "Unsupported git provider")

        try:
            project = self.catalog.get(project_id)
            scheme = GIT_SCHEMES[source.value]
            if not verify_signature(
                scheme, self.config.git.secret_for(source.value), body, headers
            ):
                raise WebhookSignatureError(source.value)
            payload = self._parse_json(source.value, body)

            event_type = get_header(headers, GIT_EVENT_HEADERS[source]) or ""
            if event_type.lower() in IGNORED_GIT_EVENTS or "zen" in payload:
                return WebhookAck(message="Ping received")

            commit = self.extract_commit_info(source, payload)
            if commit is None:
                return WebhookAck(message="Event does not trigger a deployment")

            environment = self.select_environment(project, commit)
            deployment = self.orchestrator.deploy(
                project.id,
                environment=environment,
                branch=commit.branch,
                commit_sha=commit.commit,
                trigger=(
                    DeploymentTrigger.PULL_REQUEST
                    if commit.preview
                    else DeploymentTrigger.GIT_PUSH
                ),
                git_author=commit.author,
                commit_message=commit.message,
                preview=commit.preview,
            )
        except CloudDeckError as e:
            return self._reject("git", source.value, str(e))
        except Exception as e:
            logger.error(
                f"Unexpected error handling {source.value} webhook: {e}", exc_info=True
            )
            return self._reject("git", source.value, "internal error")

        logger.info(
            f"{source.value} webhook started deployment {deployment.id} "
            f"({environment.value}, {commit.branch})"
        )
        return WebhookAck(
            processed=True,
            deployment_id=deployment.id,
            message=f"Deploying {commit.branch} to {environment.value}",
        )

    @staticmethod
    def select_environment(project: Project, commit: GitCommitInfo) -> Environment:
        """Pick the environment a git event deploys to."""
        if commit.preview is not None:
            return Environment.PREVIEW
        if commit.branch == project.repository.branch:
            return Environment.PRODUCTION
        return Environment.STAGING

    @staticmethod
    def extract_provider_event(
        adapter: BaseAdapter, provider: str, payload: dict[str, Any]
    ) -> ProviderEvent:
        """Extract a provider status change, rejecting mistyped payloads.

        Raises:
            WebhookPayloadError: If the payload cannot be understood
        """
        try:
            return adapter.extract_webhook_event(payload)
        except PAYLOAD_ERRORS as e:
            raise WebhookPayloadError(provider, _describe(e)) from e

    def extract_commit_info(
        self, source: GitProvider, payload: dict[str, Any]
    ) -> GitCommitInfo | None:
        """Extract the commit to deploy from a git provider payload.

        Returns:
            The commit, or None when the event should not deploy

        Raises:
            WebhookPayloadError: If required fields are missing or mistyped
        """
        try:
            if source == GitProvider.GITHUB:
                return self._github_commit(payload)
            if source == GitProvider.GITLAB:
                return self._gitlab_commit(payload)
            return self._bitbucket_commit(payload)
        except PAYLOAD_ERRORS as e:
            raise WebhookPayloadError(source.value, _describe(e)) from e

    # ------------------------------------------------------------------
    # Per-provider payloads
    # ------------------------------------------------------------------

    @staticmethod
    def _github_commit(payload: dict[str, Any]) -> GitCommitInfo | None:
        pull_request = payload.get("pull_request")
        if pull_request:
            if payload.get("action") in IGNORED_PR_ACTIONS:
                return None
            head = pull_request["head"]
            return GitCommitInfo(
                commit=head["sha"],
                branch=head["ref"],
                author=(pull_request.get("user") or {}).get("login"),
                message=pull_request.get("title"),
                preview=PreviewInfo(
                    number=pull_request.get("number") or payload.get("number"),
                    title=pull_request.get("title"),
                    source_branch=head["ref"],
                    target_branch=pull_request["base"]["ref"],
                ),
            )

        branch = _branch_from_ref(payload["ref"])
        if branch is None or payload.get("deleted") or payload["after"] == NULL_SHA:
            return None
        head_commit = payload.get("head_commit") or {}
        return GitCommitInfo(
            commit=payload["after"],
            branch=branch,
            author=(payload.get("pusher") or {}).get("name"),
            message=head_commit.get("message"),
        )

    @staticmethod
    def _gitlab_commit(payload: dict[str, Any]) -> GitCommitInfo | None:
        if payload.get("object_kind") == "merge_request":
            attributes = payload["object_attributes"]
            if attributes.get("action") in IGNORED_PR_ACTIONS:
                return None
            return GitCommitInfo(
                commit=(attributes.get("last_commit") or {}).get("id"),
                branch=attributes["source_branch"],
                author=(payload.get("user") or {}).get("username"),
                message=attributes.get("title"),
                preview=PreviewInfo(
                    number=attributes.get("iid"),
                    title=attributes.get("title"),
                    source_branch=attributes["source_branch"],
                    target_branch=attributes.get("target_branch"),
                ),
            )

        branch = _branch_from_ref(payload["ref"])
        if branch is None or payload["after"] == NULL_SHA:
            return None
        commits = payload.get("commits") or []
        return GitCommitInfo(
            commit=payload["after"],
            branch=branch,
            author=payload.get("user_username"),
            message=commits[0].get("message") if commits else None,
        )

    @staticmethod
    def _bitbucket_commit(payload: dict[str, Any]) -> GitCommitInfo | None:
        pull_request = payload.get("pullrequest")
        if pull_request:
            if str(pull_request.get("state", "")).lower() in IGNORED_PR_ACTIONS:
                return None
            source = pull_request["source"]
            return GitCommitInfo(
                commit=(source.get("commit") or {}).get("hash"),
                branch=source["branch"]["name"],
                author=(pull_request.get("author") or {}).get("display_name"),
                message=pull_request.get("title"),
                preview=PreviewInfo(
                    number=pull_request.get("id"),
                    title=pull_request.get("title"),
                    source_branch=source["branch"]["name"],
                    target_branch=pull_request["destination"]["branch"]["name"],
                ),
            )

        new = payload["push"]["changes"][0]["new"]
        if not new or new.get("type", "branch") != "branch":
            return None
        target = new.get("target") or {}
        return GitCommitInfo(
            commit=target.get("hash"),
            branch=new["name"],
            author=(payload.get("actor") or {}).get("display_name"),
            message=target.get("message"),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_json(source: str, body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise WebhookPayloadError(source, "malformed JSON body") from e
        if not isinstance(payload, dict):
            raise WebhookPayloadError(source, "payload is not an object")
        return payload

    def _reject(
        self,
        source: str,
        provider: str,
        reason: str,
        provider_deployment_id: str | None = None,
    ) -> WebhookAck:
        logger.warning(f"Rejected {source} webhook from {provider}: {reason}")
        self.store.record_webhook_failure(
            WebhookFailure(
                source=source,
                provider=provider,
                reason=reason,
                provider_deployment_id=provider_deployment_id,
            )
        )
        return WebhookAck(processed=False, message=reason)


def _describe(error: Exception) -> str:
    if isinstance(error, ValidationError):
        fields = ", ".join(
            ".".join(str(part) for part in item["loc"]) or "payload"
            for item in error.errors()
        )
        return f"invalid field in payload: {fields}"
    if isinstance(error, KeyError):
        return f"missing field in payload: {error}"
    return f"malformed payload: {error}"


def _branch_from_ref(ref: str) -> str | None:
    """Return the branch of a ``refs/heads/...`` ref, None for tags."""
    prefix = "refs/heads/"
    if ref.startswith(prefix):
        return ref[len(prefix) :]
    if ref.startswith("refs/"):
        return None
    return ref
