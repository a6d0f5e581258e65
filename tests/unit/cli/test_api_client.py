"""Unit tests for the CLI's HTTP client."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from clouddeck.cli.client import ApiClient, ApiError


def _response(
    status_code: int, body: object = None, reason: str = "OK"
) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = reason
    response.content = b"" if body is None else b"{}"
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def session() -> MagicMock:
    """Mocked requests session."""
    mock = MagicMock()
    mock.headers = {}
    return mock


class TestApiClient:
    """Tests for ApiClient."""

    def test_get_drops_unset_params(self, session: MagicMock) -> None:
        """None query values are not sent."""
        session.request.return_value = _response(200, {"items": []})
        client = ApiClient("http://deck.test/", session=session, timeout=5)

        data = client.get("/deployments", project_id="web", status=None)

        assert data == {"items": []}
        session.request.assert_called_once_with(
            "GET",
            "http://deck.test/deployments",
            params={"project_id": "web"},
            json=None,
            timeout=5,
        )

    def test_post_and_user_header(self, session: MagicMock) -> None:
        """The user id is sent on every request."""
        session.request.return_value = _response(202, {"id": "d1"})
        client = ApiClient("http://deck.test", user_id="u1", session=session)

        client.post("/deployments/d1/cancel")

        assert session.headers["X-User-Id"] == "u1"
        assert session.request.call_args.kwargs["json"] == {}

    def test_empty_body(self, session: MagicMock) -> None:
        """Responses without content return None."""
        session.request.return_value = _response(204)

        assert ApiClient(session=session).get("/health") is None

    def test_problem_response(self, session: MagicMock) -> None:
        """Problem details become ApiError attributes."""
        session.request.return_value = _response(
            409,
            {"title": "Conflict", "detail": "Cannot cancel deployment d1"},
            reason="Conflict",
        )

        with pytest.raises(ApiError) as exc_info:
            ApiClient(session=session).post("/deployments/d1/cancel")

        assert exc_info.value.status_code == 409
        assert str(exc_info.value) == "409 Conflict: Cannot cancel deployment d1"

    def test_non_json_error(self, session: MagicMock) -> None:
        """Error bodies that are not JSON fall back to the reason phrase."""
        session.request.return_value = _response(
            502, ValueError("no json"), reason="Bad Gateway"
        )

        with pytest.raises(ApiError, match="502 Bad Gateway"):
            ApiClient(session=session).get("/health")

    def test_unreachable_server(self, session: MagicMock) -> None:
        """Connection failures name the server URL."""
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(ApiError) as exc_info:
            ApiClient("http://deck.test", session=session).get("/health")

        assert exc_info.value.status_code is None
        assert "Cannot reach CloudDeck server at http://deck.test/health" in str(
            exc_info.value
        )
