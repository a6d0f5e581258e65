"""HTTP client used by the CLI to talk to a running ``clouddeck serve``."""

from __future__ import annotations

from typing import Any

import requests

from clouddeck.lib.errors import CloudDeckError
from clouddeck.lib.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"


class ApiError(CloudDeckError):
    """The CloudDeck server rejected a request or could not be reached.

    Attributes:
        status_code: HTTP status, None when the server was unreachable
        title: Problem title from the response
        detail: Problem detail from the response
    """

    def __init__(
        self, status_code: int | None, title: str, detail: str | None = None
    ) -> None:
        """Create an API error from a problem response."""
        self.status_code = status_code
        self.title = title
        self.detail = detail
        message = title if status_code is None else f"{status_code} {title}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ApiClient:
    """Minimal JSON client for the CloudDeck HTTP API."""

    def __init__(
        self,
        base_url: str = DEFAULT_SERVER_URL,
        user_id: str | None = None,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Server root URL
            user_id: Sent as ``X-User-Id`` for audit attribution
            session: HTTP session (a new one is created if omitted)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if user_id:
            self.session.headers["X-User-Id"] = user_id

    def get(self, path: str, **params: Any) -> Any:
        """GET a path, dropping unset query parameters."""
        query = {k: v for k, v in params.items() if v is not None}
        return self._request("GET", path, params=query)

    def post(self, path: str, body: dict[str, Any] | None = None) -> Any:
        """POST a JSON body to a path."""
        return self._request("POST", path, json_body=body or {})

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(
                method, url, params=params, json=json_body, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise ApiError(
                None, f"Cannot reach CloudDeck server at {url}", str(e)
            ) from e

        if not response.ok:
            try:
                problem = response.json()
            except ValueError:
                problem = {}
            if not isinstance(problem, dict):
                problem = {}
            raise ApiError(
                response.status_code,
                problem.get("title") or response.reason or "Request failed",
                problem.get("detail"),
            )
        return response.json() if response.content else None
