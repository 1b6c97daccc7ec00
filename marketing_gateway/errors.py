"""Gateway exceptions and FastAPI error handler registration."""
from __future__ import annotations

import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ── Exceptions ───────────────────────────────────────────────────────


class GatewayError(Exception):
    """Base for errors that carry an end-user message and an HTTP status.

    ``message`` is safe to show to the end user and is what gets stored on a
    failed job. ``details`` is operator-facing (upstream status, body) and
    is only returned in the API error body and the log.
    """

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class RejectedConcurrent(GatewayError):
    """A submission arrived while the same job was still processing."""

    status_code = 429
    code = "PREVIOUS_REQUEST_PROCESSING"

    def __init__(self, job_id: str) -> None:
        super().__init__("Previous request still processing", details={"job_id": job_id})


class JobNotFound(GatewayError):
    status_code = 404
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' not found")


class JobKindMismatch(GatewayError):
    status_code = 409
    code = "JOB_KIND_MISMATCH"

    def __init__(self, job_id: str, kind: str) -> None:
        super().__init__(f"Job '{job_id}' is a {kind} job", details={"job_id": job_id, "kind": kind})


class UpstreamUnavailable(GatewayError):
    """Connection failure, timeout or 5xx from an upstream service."""

    status_code = 502
    code = "UPSTREAM_UNAVAILABLE"


class UpstreamTimeout(UpstreamUnavailable):
    status_code = 504
    code = "UPSTREAM_TIMEOUT"


class UpstreamMisconfigured(GatewayError):
    """401/404 from upstream: wrong credentials or workflow identifier."""

    status_code = 502
    code = "UPSTREAM_MISCONFIGURED"


class MalformedUpstreamResponse(GatewayError):
    status_code = 502
    code = "MALFORMED_UPSTREAM_RESPONSE"


class WorkflowRunFailed(GatewayError):
    """The upstream run started but reported an explicit failure."""

    status_code = 502
    code = "WORKFLOW_FAILED"


class UpstreamHTTPError(Exception):
    """Non-2xx upstream response, status and body kept verbatim."""

    def __init__(self, status_code: int, body: Any, url: Optional[str] = None) -> None:
        super().__init__(f"Upstream responded with status {status_code}")
        self.status_code = status_code
        self.body = body
        self.url = url


# ── Error → HTTP mapping ────────────────────────────────────────────


def error_body(exc: GatewayError) -> dict:
    return {"error": exc.message, "code": exc.code, "details": exc.details}


async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
    headers = {"Retry-After": "5"} if isinstance(exc, RejectedConcurrent) else None
    return JSONResponse(status_code=exc.status_code, content=error_body(exc), headers=headers)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    logger.info("Validation error on %s %s: %s", request.method, request.url.path, errors)
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    detail = f"{loc}: {first.get('msg', 'invalid value')}" if loc else first.get("msg", "invalid value")
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request format", "code": "VALIDATION_ERROR", "details": detail},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register gateway exception handlers on the FastAPI app."""
    app.add_exception_handler(GatewayError, _gateway_error)
    app.add_exception_handler(RequestValidationError, _validation_error)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR", "details": None},
        )
