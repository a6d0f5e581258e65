"""Vercel adapter.

API reference: https://vercel.com/docs/rest-api
"""

from __future__ import annotations

import hashlib
from typing import Any

from clouddeck.deploy.adapters.base import (
    BASE_STATUS_MAP,
    BaseAdapter,
    flatten_env,
    read_build_artifact,
)
from clouddeck.deploy.signatures import PROVIDER_SCHEMES
from clouddeck.lib.errors import ProviderAPIError, ValidationError, WebhookPayloadError
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.config import VercelConfig
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
)

logger = get_logger(__name__)

# Webhook event type suffix -> equivalent readyState
_EVENT_STATES = {
    "created": "BUILDING",
    "succeeded": "READY",
    "ready": "READY",
    "promoted": "READY",
    "error": "ERROR",
    "canceled": "CANCELED",
}

_MAX_LIST_PAGES = 20


class VercelAdapter(BaseAdapter):
    """Deploys git sources through the Vercel REST API."""

    name = "vercel"
    signature_scheme = PROVIDER_SCHEMES["vercel"]
    status_map = {
        **BASE_STATUS_MAP,
        "initializing": DeploymentStatus.BUILDING,
    }

    config: VercelConfig

    def _default_params(self) -> dict[str, Any]:
        return {"teamId": self.config.team_id} if self.config.team_id else {}

    def create_deployment(self, request: DeploymentRequest) -> DeploymentResult:
        """Create a Vercel deployment.

        The packaged build output is uploaded file by file when the request
        carries it; otherwise Vercel builds the project's git repository.
        """
        self._require_credential()
        project = request.project
        config = request.config
        build = project.build

        files = read_build_artifact(request.artifacts)
        if files is not None:
            payload = {
                "name": request.name,
                "files": self._upload_files(files),
                "projectSettings": {"framework": None},
                "environmentVariables": flatten_env(config.env),
                "meta": {"branch": request.branch, "commit": request.commit_sha},
            }
            return self._create(payload, project.name)

        git_source: dict[str, Any] = {
            "type": project.repository.provider.value,
            "repo": project.repository.slug,
            "ref": request.branch,
        }
        if request.commit_sha:
            git_source["sha"] = request.commit_sha

        payload = {
            "name": request.name,
            "gitSource": git_source,
            "projectSettings": {
                "framework": config.framework or build.framework,
                "buildCommand": config.build_command or build.build_command,
                "outputDirectory": config.output_directory or build.output_directory,
                "rootDirectory": config.root_directory or build.root_directory,
            },
            "environmentVariables": flatten_env(config.env),
        }

        return self._create(payload, project.name)

    def _upload_files(self, files: dict[str, bytes]) -> list[dict[str, Any]]:
        """Upload file contents by SHA-1 digest and return the deployment manifest."""
        manifest = []
        uploaded: set[str] = set()
        for path, content in files.items():
            digest = hashlib.sha1(content).hexdigest()  # noqa: S324
            if digest not in uploaded:
                self._request(
                    "POST",
                    "/v2/files",
                    "upload_file",
                    data=content,
                    headers={"x-vercel-digest": digest},
                )
                uploaded.add(digest)
            manifest.append({"file": path, "sha": digest, "size": len(content)})
        logger.debug(f"Uploaded {len(uploaded)} file(s) to Vercel")
        return manifest

    def _create(self, payload: dict[str, Any], project_name: str) -> DeploymentResult:
        data = self._request(
            "POST", "/v13/deployments", "create_deployment", json_body=payload
        )
        logger.info(f"Created Vercel deployment {data.get('id')} for {project_name}")
        return DeploymentResult(
            provider=self.name,
            provider_deployment_id=str(data["id"]),
            url=self._url(data),
            status=self.normalize_status(data.get("readyState") or "queued"),
            metadata={
                "project_id": data.get("projectId"),
                "created_at": data.get("createdAt"),
                "creator": (data.get("creator") or {}).get("username"),
            },
        )

    def get_deployment_status(
        self, provider_deployment_id: str
    ) -> DeploymentStatusResult:
        """Return normalized status from ``readyState``."""
        data = self._request(
            "GET",
            f"/v13/deployments/{provider_deployment_id}",
            "get_deployment_status",
        )
        ready_state = data.get("readyState")
        status = self.normalize_status(ready_state)
        if status == DeploymentStatus.RUNNING:
            progress = 100
        elif status in (DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK):
            progress = 0
        else:
            progress = 50

        build_time = None
        if data.get("buildingAt") and data.get("ready"):
            build_time = data["ready"] - data["buildingAt"]

        return DeploymentStatusResult(
            status=status,
            progress=progress,
            url=self._url(data),
            metadata={
                "ready_state": ready_state,
                "regions": data.get("regions"),
                "error_message": data.get("errorMessage"),
                "build_time_ms": build_time,
            },
        )

    def get_deployment_logs(
        self, provider_deployment_id: str, limit: int = 50, offset: int = 0
    ) -> DeploymentLogs:
        """Return build step descriptions as log lines."""
        data = self._request(
            "GET",
            f"/v13/deployments/{provider_deployment_id}/builds",
            "get_deployment_logs",
        )
        logs = []
        for build in data.get("builds", []):
            state = build.get("readyState") or build.get("state")
            level = {"ERROR": "error", "READY": "info"}.get(state or "", "warn")
            logs.append(
                self._log_entry(
                    build.get("createdAt"),
                    level,
                    build.get("description") or f"Build step {state or 'pending'}",
                )
            )
        return self._page(logs, limit, offset)

    def list_deployments(
        self,
        project_ref: str,
        limit: int = 10,
        offset: int = 0,
        status: DeploymentStatus | None = None,
    ) -> list[DeploymentResult]:
        """List deployments, following ``pagination.next`` timestamps."""
        wanted = offset + limit
        collected: list[dict[str, Any]] = []
        params: dict[str, Any] = {"projectId": project_ref, "limit": min(wanted, 100)}

        for _ in range(_MAX_LIST_PAGES):
            data = self._request(
                "GET", "/v6/deployments", "list_deployments", params=params
            )
            collected.extend(data.get("deployments", []))
            next_until = (data.get("pagination") or {}).get("next")
            if len(collected) >= wanted or not next_until:
                break
            params = {**params, "until": next_until}

        results = [
            DeploymentResult(
                provider=self.name,
                provider_deployment_id=str(item.get("uid") or item.get("id")),
                url=self._url(item),
                status=self.normalize_status(
                    item.get("readyState") or item.get("state")
                ),
                metadata={
                    "name": item.get("name"),
                    "created_at": item.get("created") or item.get("createdAt"),
                    "creator": (item.get("creator") or {}).get("username"),
                },
            )
            for item in collected
        ]
        return self._filter_status(results, status)[offset : offset + limit]

    def cancel_deployment(self, provider_deployment_id: str) -> CancelResult:
        """Cancel a queued or building deployment."""
        self._request(
            "PATCH",
            f"/v13/deployments/{provider_deployment_id}/cancel",
            "cancel_deployment",
        )
        return CancelResult(success=True, message="Deployment canceled")

    def connect_account(self, credentials: dict[str, Any]) -> ConnectResult:
        """Verify a Vercel token by fetching the authenticated user."""
        token = credentials.get("token")
        if not token:
            raise ValidationError("credentials.token", "Token required")
        try:
            data = self._request("GET", "/v2/user", "connect_account", token=token)
        except ProviderAPIError as e:
            if e.status_code in (401, 403):
                return ConnectResult(connected=False, message="Invalid Vercel token")
            raise
        user = data.get("user", {})
        return ConnectResult(
            connected=True,
            message="Connected to Vercel",
            account_info={
                "id": user.get("id"),
                "email": user.get("email"),
                "username": user.get("username"),
            },
        )

    def disconnect_account(self, account_id: str) -> DisconnectResult:
        """Vercel has no revoke endpoint; the caller drops the stored token."""
        logger.info(f"Disconnected Vercel account {account_id}")
        return DisconnectResult(success=True)

    def extract_webhook_event(self, payload: dict[str, Any]) -> ProviderEvent:
        """Understand ``{"type": "deployment.succeeded", "payload": {...}}``."""
        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type.startswith("deployment"):
            return super().extract_webhook_event(payload)

        body = payload.get("payload") or {}
        deployment = body.get("deployment") or {}
        deployment_id = deployment.get("id") or body.get("deploymentId")
        state = _EVENT_STATES.get(event_type.rsplit(".", 1)[-1])
        if not deployment_id or not state:
            raise WebhookPayloadError(self.name, f"unsupported event {event_type}")
        return ProviderEvent(
            provider_deployment_id=str(deployment_id),
            state=state,
            status=self.normalize_status(state),
            url=self._url(deployment) if deployment.get("url") else None,
            metadata={"event_type": event_type},
        )

    @staticmethod
    def _url(data: dict[str, Any]) -> str | None:
        url = data.get("url")
        if url:
            return url if url.startswith("http") else f"https://{url}"
        if data.get("name"):
            return f"https://{data['name']}.vercel.app"
        return None
