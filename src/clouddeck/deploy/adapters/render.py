"""Render adapter.

API reference: https://api-docs.render.com/
"""

from __future__ import annotations

from typing import Any

from clouddeck.deploy.adapters.base import BASE_STATUS_MAP, BaseAdapter, flatten_env
from clouddeck.deploy.signatures import PROVIDER_SCHEMES
from clouddeck.lib.errors import (
    ProviderAPIError,
    ValidationError,
    WebhookPayloadError,
)
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.config import RenderConfig
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
    "pre_deploy_in_progress": 10,
    "build_in_progress": 25,
    "update_in_progress": 75,
    "deploy_in_progress": 75,
    "live": 100,
    "canceled": 0,
    "build_failed": 0,
    "update_failed": 0,
    "pre_deploy_failed": 0,
}

# deploy_ended webhook outcome -> deploy status
_ENDED_STATES = {
    "succeeded": "live",
    "failed": "build_failed",
    "canceled": "canceled",
}

_MAX_LIST_PAGES = 20


class RenderAdapter(BaseAdapter):
    """Creates services and triggers deploys through the Render API."""

    name = "render"
    signature_scheme = PROVIDER_SCHEMES["render"]
    status_map = {
        **BASE_STATUS_MAP,
        "created": DeploymentStatus.PENDING,
        "pre_deploy_in_progress": DeploymentStatus.BUILDING,
        "build_in_progress": DeploymentStatus.BUILDING,
        "update_in_progress": DeploymentStatus.DEPLOYING,
        "deploy_in_progress": DeploymentStatus.DEPLOYING,
        "live": DeploymentStatus.RUNNING,
        "build_failed": DeploymentStatus.FAILED,
        "update_failed": DeploymentStatus.FAILED,
        "pre_deploy_failed": DeploymentStatus.FAILED,
    }

    config: RenderConfig

    @property
    def credential(self) -> str | None:
        """The configured Render API key."""
        return self.config.api_key

    def create_deployment(self, request: DeploymentRequest) -> DeploymentResult:
        """Create the web service on first use, then trigger a deploy.

        Render builds from the repository itself, so the deploy is pinned to
        the request's commit rather than uploading build archives.
        """
        self._require_credential("api_key")
        project = request.project
        config = request.config
        build = project.build

        service_id = config.service_id
        if not service_id:
            if not config.owner_id:
                raise ValidationError(
                    "config.owner_id", "owner_id is required to create a service"
                )
            service = self._request(
                "POST",
                "/services",
                "create_service",
                json_body={
                    "type": "web_service",
                    "name": request.name,
                    "ownerId": config.owner_id,
                    "repo": project.repository.url,
                    "branch": request.branch,
                    "rootDir": config.root_directory or build.root_directory or "",
                    "autoDeploy": "no",
                    "envVars": flatten_env(config.env),
                    "serviceDetails": {
                        "env": "node",
                        "plan": config.plan or "free",
                        "region": config.region or "oregon",
                        "numInstances": 1,
                        "envSpecificDetails": {
                            "buildCommand": config.build_command
                            or build.build_command,
                            "startCommand": config.start_command or "npm start",
                        },
                    },
                },
            )
            service_id = str(service.get("service", service)["id"])
            logger.info(f"Created Render service {service_id} for {project.name}")

        payload: dict[str, Any] = {
            "clearCache": "clear" if config.clear_cache else "do_not_clear"
        }
        if request.commit_sha:
            payload["commitId"] = request.commit_sha
        data = self._request(
            "POST",
            f"/services/{service_id}/deploys",
            "create_deployment",
            json_body=payload,
        )
        deploy = data.get("deploy", data)
        domain = deploy.get("domainName")
        return DeploymentResult(
            provider=self.name,
            provider_deployment_id=str(deploy["id"]),
            url=f"https://{domain}" if domain else None,
            status=self.normalize_status(deploy.get("status") or "queued"),
            metadata={
                "service_id": service_id,
                "created_at": deploy.get("createdAt"),
                "commit": (deploy.get("commit") or {}).get("id"),
            },
        )

    def get_deployment_status(
        self, provider_deployment_id: str
    ) -> DeploymentStatusResult:
        """Return normalized status of a Render deploy."""
        data = self._request(
            "GET", f"/deploys/{provider_deployment_id}", "get_deployment_status"
        )
        deploy = data.get("deploy", data)
        native = deploy.get("status")
        domain = deploy.get("domainName")
        return DeploymentStatusResult(
            status=self.normalize_status(native),
            progress=_PROGRESS.get(native or "", 50),
            url=f"https://{domain}" if domain else None,
            metadata={
                "status": native,
                "commit": (deploy.get("commit") or {}).get("id"),
                "finished_at": deploy.get("finishedAt"),
                "error_message": deploy.get("errorMessage"),
            },
        )

    def get_deployment_logs(
        self, provider_deployment_id: str, limit: int = 50, offset: int = 0
    ) -> DeploymentLogs:
        """Fetch one page of deploy logs."""
        data = self._request(
            "GET",
            f"/deploys/{provider_deployment_id}/logs",
            "get_deployment_logs",
            params={"limit": limit, "offset": offset},
        )
        logs = [
            self._log_entry(
                item.get("timestamp"), item.get("level"), item.get("message")
            )
            for item in data.get("logs", [])
        ]
        return DeploymentLogs(logs=logs, has_more=len(logs) == limit)

    def list_deployments(
        self,
        project_ref: str,
        limit: int = 10,
        offset: int = 0,
        status: DeploymentStatus | None = None,
    ) -> list[DeploymentResult]:
        """List deploys of a service, following Render's cursors."""
        wanted = offset + limit
        collected: list[dict[str, Any]] = []
        params: dict[str, Any] = {"limit": min(wanted, 100)}

        for _ in range(_MAX_LIST_PAGES):
            page = self._request(
                "GET",
                f"/services/{project_ref}/deploys",
                "list_deployments",
                params=params,
            )
            if not page:
                break
            collected.extend(item.get("deploy", item) for item in page)
            cursor = page[-1].get("cursor")
            if len(collected) >= wanted or not cursor:
                break
            params = {**params, "cursor": cursor}

        results = [
            DeploymentResult(
                provider=self.name,
                provider_deployment_id=str(item["id"]),
                url=None,
                status=self.normalize_status(item.get("status")),
                metadata={
                    "created_at": item.get("createdAt"),
                    "commit": (item.get("commit") or {}).get("id"),
                },
            )
            for item in collected
        ]
        return self._filter_status(results, status)[offset : offset + limit]

    def cancel_deployment(self, provider_deployment_id: str) -> CancelResult:
        """Cancel an in-progress deploy."""
        self._request(
            "POST", f"/deploys/{provider_deployment_id}/cancel", "cancel_deployment"
        )
        return CancelResult(success=True, message="Deployment canceled")

    def connect_account(self, credentials: dict[str, Any]) -> ConnectResult:
        """Verify an API key by listing the owners it can act for."""
        api_key = credentials.get("api_key") or credentials.get("apiKey")
        if not api_key:
            raise ValidationError("credentials.api_key", "API key required")
        try:
            data = self._request("GET", "/owners", "connect_account", token=api_key)
        except ProviderAPIError as e:
            if e.status_code in (401, 403):
                return ConnectResult(connected=False, message="Invalid Render API key")
            raise
        items = data.get("owners", []) if isinstance(data, dict) else data
        owners = [item.get("owner", item) for item in items]
        return ConnectResult(
            connected=True,
            message="Connected to Render",
            account_info={
                "owners": [{"id": o.get("id"), "name": o.get("name")} for o in owners]
            },
        )

    def disconnect_account(self, account_id: str) -> DisconnectResult:
        """API keys are revoked in the Render dashboard; nothing to call here."""
        logger.info(f"Disconnected Render account {account_id}")
        return DisconnectResult(success=True)

    def extract_webhook_event(self, payload: dict[str, Any]) -> ProviderEvent:
        """Understand ``{"type": "deploy_ended", "data": {...}}`` events."""
        event_type = payload.get("type")
        data = payload.get("data")
        if not isinstance(event_type, str) or not isinstance(data, dict):
            return super().extract_webhook_event(payload)

        deploy_id = data.get("deployId") or data.get("id")
        if event_type in ("deploy_started", "build_started"):
            state = "build_in_progress"
        elif event_type == "build_ended":
            failed = data.get("status") == "failed"
            state = "build_failed" if failed else "update_in_progress"
        elif event_type == "deploy_ended":
            state = _ENDED_STATES.get(str(data.get("status")), "")
        else:
            state = ""
        if not deploy_id or not state:
            raise WebhookPayloadError(self.name, f"unsupported event {event_type}")
        return ProviderEvent(
            provider_deployment_id=str(deploy_id),
            state=state,
            status=self.normalize_status(state),
            metadata={"event_type": event_type, "service_id": data.get("serviceId")},
        )
