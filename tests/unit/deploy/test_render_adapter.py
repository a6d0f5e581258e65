"""Unit tests for the Render adapter."""

from __future__ import annotations

import json
from collections.abc import Callable
from unittest.mock import MagicMock

import pytest

from clouddeck.deploy.adapters.render import RenderAdapter
from clouddeck.deploy.signatures import PROVIDER_SCHEMES, sign
from clouddeck.lib.errors import (
    MissingCredentialsError,
    ValidationError,
    WebhookPayloadError,
)
from clouddeck.models.config import RenderConfig
from clouddeck.models.deployment import DeploymentRequest, DeploymentStatus

SECRET = "render-hook"


@pytest.fixture
def adapter(session: MagicMock, no_sleep: MagicMock) -> RenderAdapter:
    """Render adapter with an API key and mocked transport."""
    config = RenderConfig(api_key="rk", webhook_secret=SECRET)
    return RenderAdapter(config, session=session, sleep=no_sleep)


class TestCreateDeployment:
    """Tests for RenderAdapter.create_deployment."""

    def test_creates_service_then_deploys(
        self,
        adapter: RenderAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
        make_request: Callable[..., DeploymentRequest],
    ) -> None:
        """A service is created for the owner before the deploy is triggered."""
        session.request.side_effect = [
            make_response(201, {"service": {"id": "srv_1"}}),
            make_response(
                201,
                {
                    "id": "dep_1",
                    "status": "created",
                    "domainName": "web.onrender.com",
                    "commit": {"id": "abc123"},
                },
            ),
        ]

        result = adapter.create_deployment(
            make_request(owner_id="own_1", commit_sha="abc123")
        )

        assert result.provider_deployment_id == "dep_1"
        assert result.url == "https://web.onrender.com"
        assert result.status == DeploymentStatus.PENDING
        assert result.metadata["service_id"] == "srv_1"

        create_service, trigger = (
            call.kwargs for call in session.request.call_args_list
        )
        assert create_service["url"] == "https://api.render.com/v1/services"
        service = create_service["json"]
        assert service["ownerId"] == "own_1"
        assert service["repo"] == "https://github.com/acme/web.git"
        assert service["serviceDetails"]["plan"] == "free"
        assert service["serviceDetails"]["region"] == "oregon"
        assert service["serviceDetails"]["envSpecificDetails"]["startCommand"] == (
            "npm start"
        )
        assert trigger["url"].endswith("/services/srv_1/deploys")
        assert trigger["json"] == {"clearCache": "do_not_clear", "commitId": "abc123"}
        assert trigger["headers"]["Authorization"] == "Bearer rk"

    def test_existing_service(
        self,
        adapter: RenderAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
        make_request: Callable[..., DeploymentRequest],
    ) -> None:
        """A given service id triggers a deploy directly."""
        session.request.return_value = make_response(
            201, {"deploy": {"id": "dep_2", "status": "build_in_progress"}}
        )

        result = adapter.create_deployment(
            make_request(service_id="srv_9", clear_cache=True)
        )

        assert result.status == DeploymentStatus.BUILDING
        assert result.url is None
        assert session.request.call_count == 1
        assert session.request.call_args.kwargs["json"]["clearCache"] == "clear"

    def test_owner_required_for_new_service(
        self,
        adapter: RenderAdapter,
        session: MagicMock,
        make_request: Callable[..., DeploymentRequest],
    ) -> None:
        """Creating a service needs an owner."""
        with pytest.raises(ValidationError) as exc_info:
            adapter.create_deployment(make_request())

        assert exc_info.value.field == "config.owner_id"
        session.request.assert_not_called()

    def test_missing_api_key(
        self,
        session: MagicMock,
        make_request: Callable[..., DeploymentRequest],
    ) -> None:
        """The API key setting is named in the error."""
        adapter = RenderAdapter(RenderConfig(), session=session)

        with pytest.raises(MissingCredentialsError) as exc_info:
            adapter.create_deployment(make_request(service_id="srv_1"))

        assert exc_info.value.field == "providers.render.api_key"


class TestStatusAndLogs:
    """Tests for status, logs and listing."""

    @pytest.mark.parametrize(
        ("native", "status", "progress"),
        [
            ("created", DeploymentStatus.PENDING, 50),
            ("build_in_progress", DeploymentStatus.BUILDING, 25),
            ("update_in_progress", DeploymentStatus.DEPLOYING, 75),
            ("live", DeploymentStatus.RUNNING, 100),
            ("build_failed", DeploymentStatus.FAILED, 0),
            ("canceled", DeploymentStatus.ROLLED_BACK, 0),
        ],
    )
    def test_status_mapping(
        self,
        adapter: RenderAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
        native: str,
        status: DeploymentStatus,
        progress: int,
    ) -> None:
        """Render deploy statuses map onto the platform vocabulary."""
        session.request.return_value = make_response(200, {"status": native})

        result = adapter.get_deployment_status("dep_1")

        assert result.status == status
        assert result.progress == progress
        assert session.request.call_args.kwargs["url"] == (
            "https://api.render.com/v1/deploys/dep_1"
        )

    def test_logs_forward_paging(
        self,
        adapter: RenderAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """Limit and offset are passed to the provider."""
        session.request.return_value = make_response(
            200,
            {
                "logs": [
                    {"timestamp": "2026-01-01T00:00:00Z", "message": "a"},
                    {
                        "timestamp": "2026-01-01T00:00:01Z",
                        "level": "error",
                        "message": "b",
                    },
                ]
            },
        )

        page = adapter.get_deployment_logs("dep_1", limit=2, offset=4)

        assert session.request.call_args.kwargs["params"] == {"limit": 2, "offset": 4}
        assert [entry.message for entry in page.logs] == ["a", "b"]
        assert page.has_more is True

    def test_list_follows_cursor(
        self,
        adapter: RenderAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """Cursors are followed until enough deploys are collected."""
        session.request.side_effect = [
            make_response(
                200, [{"deploy": {"id": "dep_a", "status": "live"}, "cursor": "c1"}]
            ),
            make_response(
                200, [{"deploy": {"id": "dep_b", "status": "build_failed"}}]
            ),
        ]

        results = adapter.list_deployments("srv_1", limit=2)

        assert [r.provider_deployment_id for r in results] == ["dep_a", "dep_b"]
        assert session.request.call_args_list[1].kwargs["params"]["cursor"] == "c1"


class TestAccountAndWebhooks:
    """Tests for account connection and webhooks."""

    def test_connect_lists_owners(
        self,
        adapter: RenderAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """A valid key returns the owners it can act for."""
        session.request.return_value = make_response(
            200, [{"owner": {"id": "own_1", "name": "Acme"}, "cursor": "x"}]
        )

        result = adapter.connect_account({"apiKey": "rk2"})

        assert result.connected
        assert result.account_info["owners"] == [{"id": "own_1", "name": "Acme"}]

    def test_connect_invalid_key(
        self,
        adapter: RenderAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """An unauthorized key is not connected."""
        session.request.return_value = make_response(401, {"message": "unauthorized"})

        assert adapter.connect_account({"api_key": "bad"}).connected is False

    def test_signed_webhook(self, adapter: RenderAdapter) -> None:
        """Render signatures are base64 HMAC-SHA256."""
        body = json.dumps(
            {
                "type": "deploy_ended",
                "data": {"deployId": "dep_1", "status": "succeeded"},
            }
        ).encode()
        signature = sign(PROVIDER_SCHEMES["render"], SECRET, body)[
            "x-render-signature"
        ]

        result = adapter.validate_webhook(signature, body)
        event = adapter.extract_webhook_event(result.payload or {})

        assert result.valid
        assert event.state == "live"
        assert event.status == DeploymentStatus.RUNNING

    @pytest.mark.parametrize(
        ("event_type", "data_status", "expected"),
        [
            ("deploy_started", None, DeploymentStatus.BUILDING),
            ("build_ended", "succeeded", DeploymentStatus.DEPLOYING),
            ("build_ended", "failed", DeploymentStatus.FAILED),
            ("deploy_ended", "failed", DeploymentStatus.FAILED),
            ("deploy_ended", "canceled", DeploymentStatus.ROLLED_BACK),
        ],
    )
    def test_event_types(
        self,
        adapter: RenderAdapter,
        event_type: str,
        data_status: str | None,
        expected: DeploymentStatus,
    ) -> None:
        """Each lifecycle event maps to a status."""
        event = adapter.extract_webhook_event(
            {"type": event_type, "data": {"deployId": "dep_1", "status": data_status}}
        )

        assert event.status == expected

    def test_unsupported_event(self, adapter: RenderAdapter) -> None:
        """Unrelated events cannot be applied."""
        with pytest.raises(WebhookPayloadError):
            adapter.extract_webhook_event(
                {"type": "server_failed", "data": {"deployId": "dep_1"}}
            )
