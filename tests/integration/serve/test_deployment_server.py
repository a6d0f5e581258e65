"""Integration tests for the CloudDeck HTTP API.

Requests go through the full FastAPI application and the real deployment
engine; only the hosting provider is replaced by an in-memory adapter.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from clouddeck.deploy.services import DeploymentServices
from clouddeck.deploy.signatures import PROVIDER_SCHEMES, sign
from clouddeck.models.deployment import DeploymentStatus
from clouddeck.serve.models import ServerState
from clouddeck.serve.server import DeploymentServer

WAIT = 30


@pytest.fixture
def server(services: DeploymentServices) -> DeploymentServer:
    """Server wrapping the shared fixture engine."""
    return DeploymentServer(services.config, services=services)


@pytest_asyncio.fixture
async def client(server: DeploymentServer) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client for the API."""
    app = server.create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _deploy(client: AsyncClient, **body: Any) -> dict[str, Any]:
    response = await client.post(
        "/deployments",
        json={"project_id": "web", **body},
        headers={"X-User-Id": "u1"},
    )
    assert response.status_code == 202
    return response.json()


class TestHealth:
    """Tests for health endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient, server: DeploymentServer) -> None:
        """The app reports ready once created."""
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["projects"] == 3
        assert server.state == ServerState.READY

    @pytest.mark.asyncio
    async def test_ready_and_providers(self, client: AsyncClient) -> None:
        """Readiness and the provider list are served."""
        ready = await client.get("/ready")
        providers = await client.get("/providers")

        assert ready.json() == {"ready": True}
        assert providers.json() == {"providers": ["vercel", "netlify", "render"]}


class TestDeploymentEndpoints:
    """Tests for the deployment lifecycle over HTTP."""

    @pytest.mark.asyncio
    async def test_create_and_follow(
        self, client: AsyncClient, services: DeploymentServices
    ) -> None:
        """A deployment is accepted, runs and is readable afterwards."""
        created = await _deploy(client, environment="staging")

        assert created["status"] == DeploymentStatus.PENDING.value
        assert created["trigger"] == "api"
        assert created["created_by"] == "u1"

        services.orchestrator.wait(created["id"], timeout=WAIT)
        fetched = await client.get(f"/deployments/{created['id']}")
        listed = await client.get("/deployments", params={"project_id": "web"})
        env = await client.get("/projects/web/environments/staging")

        assert fetched.json()["status"] == "running"
        assert listed.json()["total"] == 1
        assert env.json()["live_deployment"]["id"] == created["id"]
        assert env.json()["url"] == "https://web-1.example.app"

    @pytest.mark.asyncio
    async def test_unknown_deployment_is_problem(self, client: AsyncClient) -> None:
        """Missing records return problem+json 404s."""
        response = await client.get("/deployments/nope")

        assert response.status_code == 404
        assert response.headers["content-type"].startswith(
            "application/problem+json"
        )
        assert response.json()["detail"] == "Deployment not found: nope"

    @pytest.mark.asyncio
    async def test_unknown_project(self, client: AsyncClient) -> None:
        """Deploying an unknown project is a 404."""
        response = await client.post("/deployments", json={"project_id": "ghost"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_body(self, client: AsyncClient) -> None:
        """Request validation still rejects malformed bodies."""
        response = await client.post(
            "/deployments", json={"project_id": "web", "environment": "qa"}
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cancel_finished_is_conflict(
        self, client: AsyncClient, services: DeploymentServices
    ) -> None:
        """Cancelling a running deployment is a 409."""
        created = await _deploy(client)
        services.orchestrator.wait(created["id"], timeout=WAIT)

        response = await client.post(f"/deployments/{created['id']}/cancel")

        assert response.status_code == 409
        assert response.json()["title"] == "Conflict"

    @pytest.mark.asyncio
    async def test_rollback_and_promote(
        self, client: AsyncClient, services: DeploymentServices
    ) -> None:
        """Rollback and promotion return new pending deployments."""
        first = await _deploy(client, environment="staging")
        services.orchestrator.wait(first["id"], timeout=WAIT)

        rollback = await client.post(
            f"/deployments/{first['id']}/rollback", json={"reason": "bad"}
        )
        promote = await client.post(
            f"/deployments/{first['id']}/promote",
            json={"target_environment": "production"},
        )

        assert rollback.status_code == 202
        assert rollback.json()["rollback_from_id"] == first["id"]
        assert rollback.json()["rollback_reason"] == "bad"
        assert promote.status_code == 202
        assert promote.json()["promoted_from_id"] == first["id"]
        services.orchestrator.wait(rollback.json()["id"], timeout=WAIT)
        services.orchestrator.wait(promote.json()["id"], timeout=WAIT)

    @pytest.mark.asyncio
    async def test_logs_stats_and_events(
        self, client: AsyncClient, services: DeploymentServices
    ) -> None:
        """Logs, statistics, events and audit facts are exposed."""
        created = await _deploy(client)
        services.orchestrator.wait(created["id"], timeout=WAIT)

        logs = await client.get(f"/deployments/{created['id']}/logs")
        stats = await client.get("/projects/web/stats")
        events = await client.get("/events")
        audit = await client.get("/audit")

        assert logs.json()["logs"][0]["message"] == "log dpl_1"
        assert stats.json()["deployments"]["total"] == 1
        assert events.json()[0]["name"] == "deployment.success"
        assert audit.json()[0]["user_id"] == "u1"


class TestBuildEndpoints:
    """Tests for build endpoints."""

    @pytest.mark.asyncio
    async def test_build_records_and_logs(
        self, client: AsyncClient, services: DeploymentServices
    ) -> None:
        """Builds created by deployments are listed with their logs."""
        created = await _deploy(client)
        deployment = services.orchestrator.wait(created["id"], timeout=WAIT)

        listed = await client.get("/builds", params={"project_id": "web"})
        build = await client.get(f"/builds/{deployment.build_id}")
        logs = await client.get(
            f"/builds/{deployment.build_id}/logs", params={"limit": 1}
        )

        assert listed.json()["total"] == 1
        assert build.json()["status"] == "success"
        assert len(logs.json()["items"]) == 1
        assert logs.json()["total"] > 1

    @pytest.mark.asyncio
    async def test_cancel_finished_build(
        self, client: AsyncClient, services: DeploymentServices
    ) -> None:
        """Finished builds cannot be cancelled."""
        created = await _deploy(client)
        deployment = services.orchestrator.wait(created["id"], timeout=WAIT)

        response = await client.post(f"/builds/{deployment.build_id}/cancel")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_missing_build(self, client: AsyncClient) -> None:
        """Unknown builds are 404s."""
        response = await client.get("/builds/nope/logs")

        assert response.status_code == 404


class TestWebhookEndpoints:
    """Tests for webhook endpoints."""

    @pytest.mark.asyncio
    async def test_forged_provider_webhook(
        self, client: AsyncClient, services: DeploymentServices
    ) -> None:
        """Forged callbacks are acknowledged and listed as failures."""
        body = json.dumps({"deploymentId": "dpl_1", "state": "READY"}).encode()
        headers = sign(PROVIDER_SCHEMES["vercel"], "wrong", body)

        response = await client.post(
            "/webhooks/providers/vercel", content=body, headers=headers
        )
        failures = await client.get("/webhooks/failures")

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["processed"] is False
        assert failures.json()[0]["provider"] == "vercel"

    @pytest.mark.asyncio
    async def test_signed_provider_webhook(
        self, client: AsyncClient, services: DeploymentServices, fake_adapter: Any
    ) -> None:
        """Signed callbacks are verified over the raw body and applied."""
        fake_adapter.create_status = DeploymentStatus.DEPLOYING
        created = await _deploy(client)
        services.orchestrator.wait(created["id"], timeout=WAIT)
        body = json.dumps({"deploymentId": "dpl_1", "state": "READY"}).encode()
        secret = services.registry.get_adapter("vercel").config.webhook_secret or ""

        response = await client.post(
            "/webhooks/providers/vercel",
            content=body,
            headers=sign(PROVIDER_SCHEMES["vercel"], secret, body),
        )

        assert response.json()["processed"] is True
        assert response.json()["deployment_id"] == created["id"]
        fetched = await client.get(f"/deployments/{created['id']}")
        assert fetched.json()["status"] == "running"

    @pytest.mark.asyncio
    async def test_unsigned_git_webhook(self, client: AsyncClient) -> None:
        """Git webhooks without a configured secret are rejected."""
        response = await client.post(
            "/webhooks/git/github/web",
            content=b'{"ref": "refs/heads/main"}',
            headers={"X-GitHub-Event": "push"},
        )

        assert response.status_code == 200
        assert response.json()["processed"] is False
