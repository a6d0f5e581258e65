"""Unit tests for the Netlify adapter."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from unittest.mock import MagicMock

import pytest

from clouddeck.deploy.adapters.netlify import NetlifyAdapter
from clouddeck.deploy.signatures import PROVIDER_SCHEMES, sign
from clouddeck.lib.errors import MissingCredentialsError, WebhookPayloadError
from clouddeck.models.build import Artifact
from clouddeck.models.config import NetlifyConfig
from clouddeck.models.deployment import DeploymentRequest, DeploymentStatus

SECRET = "netlify-hook"


@pytest.fixture
def adapter(session: MagicMock, no_sleep: MagicMock) -> NetlifyAdapter:
    """Netlify adapter with a token and mocked transport."""
    config = NetlifyConfig(token="nt", webhook_secret=SECRET)
    return NetlifyAdapter(config, session=session, sleep=no_sleep)


class TestCreateDeployment:
    """Tests for NetlifyAdapter.create_deployment."""

    def test_creates_site_links_repo_and_builds(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
        make_request: Callable[..., DeploymentRequest],
    ) -> None:
        """Without a site id, a site is created before the build is triggered."""
        session.request.side_effect = [
            make_response(201, {"id": "site_1", "name": "web-acme"}),
            make_response(200, {"id": "site_1"}),
            make_response(
                200, {"id": "bld_1", "deploy_id": "dep_1", "state": "enqueued"}
            ),
        ]

        result = adapter.create_deployment(make_request(env={"NODE_ENV": "prod"}))

        assert result.provider_deployment_id == "dep_1"
        assert result.url == "https://web-acme.netlify.app"
        assert result.status == DeploymentStatus.PENDING
        assert result.metadata == {
            "site_id": "site_1",
            "build_id": "bld_1",
            "created_at": None,
        }

        create_site, update_site, trigger = (
            call.kwargs for call in session.request.call_args_list
        )
        assert create_site["url"] == "https://api.netlify.com/api/v1/sites"
        assert create_site["json"] == {"name": "web"}
        assert update_site["method"] == "PATCH"
        assert update_site["json"]["repo"]["repo"] == "acme/web"
        assert update_site["json"]["repo"]["dir"] == "out"
        assert update_site["json"]["build_settings"] == {"env": {"NODE_ENV": "prod"}}
        assert trigger["url"].endswith("/sites/site_1/builds")
        assert trigger["json"] == {"title": "Deploy main"}

    def test_existing_site(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
        make_request: Callable[..., DeploymentRequest],
    ) -> None:
        """A given site id skips site creation."""
        session.request.side_effect = [
            make_response(200, {"id": "site_9"}),
            make_response(200, {"id": "bld_2", "deploy_id": "dep_2"}),
        ]

        result = adapter.create_deployment(
            make_request(site_id="site_9", clear_cache=True)
        )

        assert result.metadata["site_id"] == "site_9"
        assert session.request.call_count == 2
        trigger = session.request.call_args.kwargs
        assert trigger["json"]["clear_cache"] is True

    def test_deploys_build_output_by_digest(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
        make_request: Callable[..., DeploymentRequest],
        build_artifact: Artifact,
    ) -> None:
        """Only files Netlify asks for are uploaded; the repo is not linked."""
        home = b"<h1>home</h1>"
        home_sha = hashlib.sha1(home).hexdigest()
        session.request.side_effect = [
            make_response(
                200,
                {
                    "id": "dep_5",
                    "state": "uploading",
                    "required": [home_sha],
                    "ssl_url": "https://dep-5--web.netlify.app",
                },
            ),
            make_response(200, {"id": "file_1"}),
        ]

        result = adapter.create_deployment(
            make_request(site_id="site_9", artifacts=[build_artifact])
        )

        assert result.provider_deployment_id == "dep_5"
        assert result.status == DeploymentStatus.DEPLOYING
        assert result.url == "https://dep-5--web.netlify.app"
        create, upload = (call.kwargs for call in session.request.call_args_list)
        assert create["url"].endswith("/sites/site_9/deploys")
        assert create["json"]["files"] == {
            "/about.html": home_sha,
            "/assets/app.js": hashlib.sha1(b"console.log('hi')").hexdigest(),
            "/index.html": home_sha,
        }
        assert upload["method"] == "PUT"
        assert upload["url"].endswith("/deploys/dep_5/files/about.html")
        assert upload["data"] == home

    def test_missing_token(
        self,
        session: MagicMock,
        make_request: Callable[..., DeploymentRequest],
    ) -> None:
        """A missing token is reported before any call."""
        adapter = NetlifyAdapter(NetlifyConfig(), session=session)

        with pytest.raises(MissingCredentialsError):
            adapter.create_deployment(make_request())

        session.request.assert_not_called()


class TestStatus:
    """Tests for status, logs and listing."""

    @pytest.mark.parametrize(
        ("state", "status"),
        [
            ("new", DeploymentStatus.PENDING),
            ("building", DeploymentStatus.BUILDING),
            ("uploading", DeploymentStatus.DEPLOYING),
            ("processing", DeploymentStatus.DEPLOYING),
            ("ready", DeploymentStatus.RUNNING),
            ("error", DeploymentStatus.FAILED),
            ("rejected", DeploymentStatus.FAILED),
            ("mystery", DeploymentStatus.PENDING),
        ],
    )
    def test_status_mapping(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
        state: str,
        status: DeploymentStatus,
    ) -> None:
        """Netlify deploy states map onto the platform vocabulary."""
        session.request.return_value = make_response(
            200, {"state": state, "ssl_url": "https://web.netlify.app"}
        )

        result = adapter.get_deployment_status("dep_1")

        assert result.status == status
        assert result.url == "https://web.netlify.app"
        assert session.request.call_args.kwargs["url"].endswith("/deploys/dep_1")

    def test_logs_include_error_message(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """Summary messages and the deploy error become log lines."""
        session.request.return_value = make_response(
            200,
            {
                "summary": {
                    "messages": [
                        {"type": "info", "title": "3 new files uploaded"},
                        {"type": "warning", "title": "Mixed content"},
                    ]
                },
                "error_message": "Build script returned non-zero exit code: 2",
            },
        )

        page = adapter.get_deployment_logs("dep_1")

        assert [entry.level.value for entry in page.logs] == ["info", "warn", "error"]
        assert page.has_more is False

    def test_list_translates_offset_to_pages(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """Offsets become 1-based page numbers."""
        session.request.return_value = make_response(
            200,
            [
                {"id": "dep_a", "state": "ready"},
                {"id": "dep_b", "state": "error"},
            ],
        )

        results = adapter.list_deployments("site_1", limit=10, offset=20)

        params = session.request.call_args.kwargs["params"]
        assert params == {"per_page": 10, "page": 3}
        assert [r.status for r in results] == [
            DeploymentStatus.RUNNING,
            DeploymentStatus.FAILED,
        ]

    def test_cancel(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """Cancel posts to the deploy cancel endpoint."""
        session.request.return_value = make_response(200, {"state": "error"})

        assert adapter.cancel_deployment("dep_1").success
        assert session.request.call_args.kwargs["url"].endswith(
            "/deploys/dep_1/cancel"
        )


class TestAccountAndWebhooks:
    """Tests for account connection and webhooks."""

    def test_connect_rejected(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """A forbidden token is reported as not connected."""
        session.request.return_value = make_response(403, {"message": "Forbidden"})

        assert adapter.connect_account({"token": "bad"}).connected is False

    def test_connect_valid(
        self,
        adapter: NetlifyAdapter,
        session: MagicMock,
        make_response: Callable[..., MagicMock],
    ) -> None:
        """A valid token returns the account profile."""
        session.request.return_value = make_response(
            200, {"id": "u1", "email": "dev@acme.io", "slug": "acme"}
        )

        result = adapter.connect_account({"token": "ok"})

        assert result.connected
        assert result.account_info["login"] == "acme"

    def test_signed_deploy_webhook(self, adapter: NetlifyAdapter) -> None:
        """A signed deploy object validates and maps to an event."""
        payload = {
            "id": "dep_1",
            "site_id": "site_1",
            "state": "ready",
            "ssl_url": "https://web.netlify.app",
        }
        body = json.dumps(payload).encode()
        signature = sign(PROVIDER_SCHEMES["netlify"], SECRET, body)[
            "x-webhook-signature"
        ]

        result = adapter.validate_webhook(signature, body)
        event = adapter.extract_webhook_event(result.payload or {})

        assert result.valid
        assert event.provider_deployment_id == "dep_1"
        assert event.status == DeploymentStatus.RUNNING
        assert event.url == "https://web.netlify.app"
        assert event.metadata["site_id"] == "site_1"

    def test_webhook_without_secret_rejected(
        self, session: MagicMock
    ) -> None:
        """Without a configured secret nothing validates."""
        adapter = NetlifyAdapter(NetlifyConfig(token="nt"), session=session)

        assert not adapter.validate_webhook("anything", b"{}").valid

    def test_event_without_state(self, adapter: NetlifyAdapter) -> None:
        """Payloads lacking a state cannot be applied."""
        with pytest.raises(WebhookPayloadError):
            adapter.extract_webhook_event({"id": "dep_1"})
