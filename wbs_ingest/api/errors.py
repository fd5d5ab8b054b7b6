from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from wbs_ingest.models.error_record import utc_timestamp
from wbs_ingest.queue.client import JobAlreadyActiveError, JobNotFoundError, QueueError
from wbs_ingest.services.retrieval import RetrievalError

"""Uniform error envelope for the HTTP layer.

Every failure leaves the API as::

    {"success": false, "error": {"code", "message", "timestamp", "requestId"}}

with ``code`` one of NOT_FOUND, VALIDATION_ERROR, UNAUTHORIZED, RATE_LIMITED,
INTERNAL_ERROR. Domain exceptions are mapped here, route handlers never build error
bodies themselves.
"""

__all__ = [
    "ApiError",
    "error_body",
    "error_response",
    "install_error_handlers",
]

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Error raised by route handlers that has no domain exception of its own."""

    def __init__(self, code: str, message: str, status_code: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def error_body(code: str, message: str, request_id: str | None) -> dict[str, Any]:
    return {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "timestamp": utc_timestamp(),
            "requestId": request_id,
        },
    }


def error_response(request: Request, code: str, message: str, status_code: int) -> JSONResponse:
    request_id = _request_id(request)
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse(status_code=status_code, content=error_body(code, message, request_id), headers=headers)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("query", "path", "body"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request"


def install_error_handlers(app) -> None:
    """Register the envelope handlers on ``app``."""

    @app.exception_handler(RetrievalError)
    async def retrieval_error_handler(request: Request, exc: RetrievalError):
        if exc.status_code >= 500:
            logger.error("retrieval failed: %s (rid=%s)", exc, _request_id(request))
        return error_response(request, exc.code, str(exc), exc.status_code)

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return error_response(request, exc.code, exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(request, "VALIDATION_ERROR", _validation_message(exc), 400)

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        return error_response(request, "NOT_FOUND", str(exc), 404)

    @app.exception_handler(JobAlreadyActiveError)
    async def job_active_handler(request: Request, exc: JobAlreadyActiveError):
        return error_response(request, "VALIDATION_ERROR", str(exc), 409)

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError):
        logger.error("queue unavailable: %s (rid=%s)", exc, _request_id(request))
        return error_response(request, "INTERNAL_ERROR", "task queue unavailable", 503)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return error_response(request, "INTERNAL_ERROR", "internal server error", 500)
