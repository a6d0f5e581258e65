"""Netlify adapter.

API reference: https://docs.netlify.com/api/get-started/
"""

from __future__ import annotations

import hashlib
from typing import Any

from clouddeck.deploy.adapters.base import (
    BASE_STATUS_MAP,
    BaseAdapter,
    read_build_artifact,
)
from clouddeck.deploy.signatures import PROVIDER_SCHEMES
from clouddeck.lib.errors import ProviderAPIError, ValidationError, WebhookPayloadError
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.config import NetlifyConfig
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

_PROGRESS = {
    DeploymentStatus.PENDING: 0,
    DeploymentStatus.BUILDING: 30,
    DeploymentStatus.DEPLOYING: 70,
    DeploymentStatus.RUNNING: 100,
}


class NetlifyAdapter(BaseAdapter):
    """Builds and publishes sites through the Netlify API.

    A deployment is a Netlify *deploy*; the site is created on first use
    unless ``site_id`` is supplied.
    """

    name = "netlify"
    signature_scheme = PROVIDER_SCHEMES["netlify"]
    status_map = {
        **BASE_STATUS_MAP,
        "new": DeploymentStatus.PENDING,
        "enqueued": DeploymentStatus.PENDING,
        "accepted": DeploymentStatus.PENDING,
        "pending_review": DeploymentStatus.PENDING,
        "uploading": DeploymentStatus.DEPLOYING,
        "uploaded": DeploymentStatus.DEPLOYING,
        "preparing": DeploymentStatus.DEPLOYING,
        "prepared": DeploymentStatus.DEPLOYING,
        "processing": DeploymentStatus.DEPLOYING,
        "processed": DeploymentStatus.DEPLOYING,
        "rejected": DeploymentStatus.FAILED,
    }

    config: NetlifyConfig

    def create_deployment(self, request: DeploymentRequest) -> DeploymentResult:
        """Publish the packaged build output, or link the repository and build.

        With a build archive the files are deployed by digest and only the
        ones Netlify does not already hold are uploaded. Without one the site
        is linked to the repository and Netlify runs the build.
        """
        self._require_credential()
        project = request.project
        config = request.config
        build = project.build

        site_id, site_name = self._ensure_site(request)
        files = read_build_artifact(request.artifacts)
        if files is not None:
            return self._deploy_files(request, site_id, site_name, files)

        self._request(
            "PATCH",
            f"/sites/{site_id}",
            "update_site",
            json_body={
                "repo": {
                    "provider": project.repository.provider.value,
                    "repo": project.repository.slug,
                    "branch": request.branch,
                    "private": not project.repository.public,
                    "cmd": config.build_command or build.build_command,
                    "dir": config.output_directory or build.output_directory,
                    "base": config.root_directory or build.root_directory,
                },
                "build_settings": {"env": dict(sorted(config.env.items()))},
            },
        )

        payload: dict[str, Any] = {"title": f"Deploy {request.branch}"}
        if config.clear_cache:
            payload["clear_cache"] = True
        data = self._request(
            "POST", f"/sites/{site_id}/builds", "create_deployment", json_body=payload
        )

        deploy_id = data.get("deploy_id") or data.get("id")
        return DeploymentResult(
            provider=self.name,
            provider_deployment_id=str(deploy_id),
            url=f"https://{site_name}.netlify.app",
            status=self.normalize_status(data.get("state") or "queued"),
            metadata={
                "site_id": site_id,
                "build_id": data.get("id"),
                "created_at": data.get("created_at"),
            },
        )

    def _ensure_site(self, request: DeploymentRequest) -> tuple[str, str]:
        if request.config.site_id:
            return request.config.site_id, request.name
        site = self._request(
            "POST", "/sites", "create_site", json_body={"name": request.name}
        )
        site_id = str(site["id"])
        logger.info(f"Created Netlify site {site_id} for {request.project.name}")
        return site_id, site.get("name") or request.name

    def _deploy_files(
        self,
        request: DeploymentRequest,
        site_id: str,
        site_name: str,
        files: dict[str, bytes],
    ) -> DeploymentResult:
        digests = {
            f"/{path}": hashlib.sha1(content).hexdigest()  # noqa: S324
            for path, content in files.items()
        }
        data = self._request(
            "POST",
            f"/sites/{site_id}/deploys",
            "create_deployment",
            json_body={"files": digests, "title": f"Deploy {request.branch}"},
        )
        deploy_id = str(data["id"])

        required = set(data.get("required") or [])
        for path, digest in digests.items():
            if digest in required:
                self._request(
                    "PUT",
                    f"/deploys/{deploy_id}/files{path}",
                    "upload_file",
                    data=files[path[1:]],
                )
                required.discard(digest)
        logger.info(f"Uploaded build output to Netlify deploy {deploy_id}")

        return DeploymentResult(
            provider=self.name,
            provider_deployment_id=deploy_id,
            url=data.get("ssl_url") or f"https://{site_name}.netlify.app",
            status=self.normalize_status(data.get("state") or "uploading"),
            metadata={"site_id": site_id, "created_at": data.get("created_at")},
        )

    def get_deployment_status(
        self, provider_deployment_id: str
    ) -> DeploymentStatusResult:
        """Return normalized status of a Netlify deploy."""
        data = self._request(
            "GET", f"/deploys/{provider_deployment_id}", "get_deployment_status"
        )
        status = self.normalize_status(data.get("state"))
        return DeploymentStatusResult(
            status=status,
            progress=_PROGRESS.get(status, 0),
            url=data.get("ssl_url") or data.get("deploy_ssl_url") or data.get("url"),
            metadata={
                "state": data.get("state"),
                "site_id": data.get("site_id"),
                "deploy_time": data.get("deploy_time"),
                "error_message": data.get("error_message"),
            },
        )

    def get_deployment_logs(
        self, provider_deployment_id: str, limit: int = 50, offset: int = 0
    ) -> DeploymentLogs:
        """Return the deploy summary messages as log lines."""
        data = self._request(
            "GET", f"/deploys/{provider_deployment_id}", "get_deployment_logs"
        )
        logs = [
            self._log_entry(
                None,
                "warn" if message.get("type") == "warning" else "info",
                message.get("title") or message.get("description"),
            )
            for message in (data.get("summary") or {}).get("messages", [])
        ]
        if data.get("error_message"):
            logs.append(
                self._log_entry(data.get("updated_at"), "error", data["error_message"])
            )
        return self._page(logs, limit, offset)

    def list_deployments(
        self,
        project_ref: str,
        limit: int = 10,
        offset: int = 0,
        status: DeploymentStatus | None = None,
    ) -> list[DeploymentResult]:
        """List deploys of a site using Netlify's 1-based page numbers."""
        page = offset // limit + 1
        skip = offset % limit
        data = self._request(
            "GET",
            f"/sites/{project_ref}/deploys",
            "list_deployments",
            params={"per_page": limit + skip, "page": page},
        )
        results = [
            DeploymentResult(
                provider=self.name,
                provider_deployment_id=str(item["id"]),
                url=item.get("ssl_url") or item.get("deploy_ssl_url"),
                status=self.normalize_status(item.get("state")),
                metadata={
                    "branch": item.get("branch"),
                    "commit_ref": item.get("commit_ref"),
                    "created_at": item.get("created_at"),
                },
            )
            for item in data or []
        ]
        return self._filter_status(results[skip:], status)[:limit]

    def cancel_deployment(self, provider_deployment_id: str) -> CancelResult:
        """Cancel a deploy that has not finished."""
        self._request(
            "POST", f"/deploys/{provider_deployment_id}/cancel", "cancel_deployment"
        )
        return CancelResult(success=True, message="Deployment canceled")

    def connect_account(self, credentials: dict[str, Any]) -> ConnectResult:
        """Verify a Netlify token by fetching the current user."""
        token = credentials.get("token")
        if not token:
            raise ValidationError("credentials.token", "Token required")
        try:
            data = self._request("GET", "/user", "connect_account", token=token)
        except ProviderAPIError as e:
            if e.status_code in (401, 403):
                return ConnectResult(connected=False, message="Invalid Netlify token")
            raise
        return ConnectResult(
            connected=True,
            message="Connected to Netlify",
            account_info={
                "id": data.get("id"),
                "email": data.get("email"),
                "login": data.get("slug") or data.get("login"),
            },
        )

    def disconnect_account(self, account_id: str) -> DisconnectResult:
        """Netlify tokens are revoked by the user; nothing to call here."""
        logger.info(f"Disconnected Netlify account {account_id}")
        return DisconnectResult(success=True)

    def extract_webhook_event(self, payload: dict[str, Any]) -> ProviderEvent:
        """Netlify posts the full deploy object as the webhook body."""
        deploy_id = payload.get("id") or payload.get("deploymentId")
        state = payload.get("state")
        if not deploy_id or not state:
            raise WebhookPayloadError(self.name, "missing deploy id or state")
        return ProviderEvent(
            provider_deployment_id=str(deploy_id),
            state=str(state),
            status=self.normalize_status(str(state)),
            url=(
                payload.get("ssl_url")
                or payload.get("deploy_ssl_url")
                or payload.get("url")
            ),
            error_message=payload.get("error_message") or payload.get("errorMessage"),
            metadata={"site_id": payload.get("site_id")},
        )
