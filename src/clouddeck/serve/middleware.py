"""HTTP middleware and exception handlers for the CloudDeck API.

Errors are returned as RFC 7807 problem details. CloudDeck exceptions map to
status codes by type; anything else becomes a 500 without leaking internals
unless debug is enabled.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from clouddeck.lib.errors import (
    CloudDeckError,
    ConfigurationError,
    DeployLockedError,
    NotFoundError,
    ProviderAPIError,
    StateConflictError,
    TransientProviderError,
    ValidationError,
)
from clouddeck.lib.logging_config import get_logger
from clouddeck.serve.models import ProblemDetail

logger = get_logger(__name__)

PROBLEM_CONTENT_TYPE = "application/problem+json"

# Most specific first
ERROR_STATUS: tuple[tuple[type[CloudDeckError], int, str], ...] = (
    (NotFoundError, 404, "Not Found"),
    (StateConflictError, 409, "Conflict"),
    (DeployLockedError, 403, "Deployments Locked"),
    (ConfigurationError, 400, "Configuration Error"),
    (ValidationError, 400, "Validation Error"),
    (TransientProviderError, 503, "Provider Unavailable"),
    (ProviderAPIError, 502, "Provider Error"),
)


def problem_response(
    status: int, title: str, detail: str | None, instance: str | None = None
) -> JSONResponse:
    """Build an RFC 7807 response."""
    slug = title.lower().replace(" ", "-")
    problem = ProblemDetail(
        type=f"/problems/{slug}",
        title=title,
        status=status,
        detail=detail,
        instance=instance,
    )
    return JSONResponse(
        status_code=status,
        content=problem.model_dump(exclude_none=True),
        media_type=PROBLEM_CONTENT_TYPE,
    )


def status_for(exc: CloudDeckError) -> tuple[int, str]:
    """Return the HTTP status and title for a CloudDeck error."""
    for error_type, status, title in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status, title
    return 500, "Internal Server Error"


async def clouddeck_error_handler(request: Request, exc: Exception) -> Response:
    """Translate CloudDeck exceptions into problem responses."""
    if isinstance(exc, CloudDeckError):
        status, title = status_for(exc)
    else:
        status, title = 500, "Internal Server Error"
    if status >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return problem_response(status, title, str(exc), request.url.path)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the CloudDeck exception handlers on an application."""
    app.add_exception_handler(CloudDeckError, clouddeck_error_handler)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turns unexpected exceptions into 500 problem responses."""

    def __init__(self, app: ASGIApp, debug: bool = False) -> None:
        """Initialize the middleware."""
        super().__init__(app)
        self.debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(
                f"Unhandled error on {request.method} {request.url.path}: {e}",
                exc_info=True,
            )
            detail = str(e) if self.debug else "An unexpected error occurred"
            return problem_response(
                500, "Internal Server Error", detail, request.url.path
            )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its status and duration."""

    def __init__(self, app: ASGIApp, debug: bool = False) -> None:
        """Initialize the middleware."""
        super().__init__(app)
        self.debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        message = (
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({elapsed_ms:.1f}ms)"
        )
        if self.debug:
            logger.info(message)
        else:
            logger.debug(message)
        return response
