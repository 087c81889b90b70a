"""
Admin API middleware and error mapping.

Every request gets an id (taken from X-Request-ID or generated) that is echoed
back and bound into the structlog context, so pipeline entries logged while an
admin trigger runs can be traced to the request. Domain errors map to JSON
bodies with a stable "error" code.
"""
from __future__ import annotations

import time
import uuid

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from shared.utils.logging import get_logger
from storage.fixture_store import FixtureStoreError
from storage.repository import RepositoryError

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
UNLOGGED_PATHS = frozenset({"/health", "/metrics"})

# exception type -> (status, error code); first match wins
ERROR_MAP: tuple[tuple[type[Exception], int, str], ...] = (
    (RepositoryError, 503, "storage_unavailable"),
    (FixtureStoreError, 409, "fixture_conflict"),
)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class AdminRequestMiddleware(BaseHTTPMiddleware):
    """Assigns the request id and logs one line per admin request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        path = request.url.path
        started = time.monotonic()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
            if path not in UNLOGGED_PATHS:
                logger.info(
                    "http_request",
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    duration_ms=round((time.monotonic() - started) * 1000, 2),
                    client=request.client.host if request.client else "unknown",
                )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _domain_error_handler(status_code: int, error: str):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(error, path=request.url.path, error=str(exc), request_id=_request_id(request))
        return JSONResponse(
            status_code=status_code,
            content={"error": error, "message": str(exc), "request_id": _request_id(request)},
        )
    return handler


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        error=str(exc),
        request_id=_request_id(request),
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": _request_id(request),
        },
    )


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(AdminRequestMiddleware)
    for exc_type, status_code, error in ERROR_MAP:
        app.add_exception_handler(exc_type, _domain_error_handler(status_code, error))
    app.add_exception_handler(Exception, _unhandled_error)
