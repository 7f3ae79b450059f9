"""Settlement error taxonomy and structured error response handlers.

Every error (domain, validation, or unexpected) returns:

    {
      "error": {
        "code": "DESCRIPTIVE_CODE",
        "message": "Human-readable explanation safe to show a user.",
        "request_id": "abc123..."
      }
    }

Processor internals never reach the response body; ``ProcessorError`` only
carries the processor's own user-facing message when one was supplied.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# ── Domain errors ─────────────────────────────────────────────────────────────


class SettlementError(Exception):
    """Base class for errors surfaced to callers of the settlement core."""

    status_code = 500
    code = "SETTLEMENT_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(SettlementError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(SettlementError):
    status_code = 403
    code = "FORBIDDEN"


class InvalidStateError(SettlementError):
    status_code = 400
    code = "INVALID_STATE"


class PayeeNotReadyError(SettlementError):
    status_code = 400
    code = "PAYEE_NOT_READY"


class ProcessorError(SettlementError):
    status_code = 502
    code = "PROCESSOR_ERROR"

    def __init__(self, message: str, *, status: int | None = None, detail: str | None = None):
        super().__init__(message)
        # Upstream HTTP status and raw body, for logs only.
        self.status = status
        self.detail = detail


class SignatureError(SettlementError):
    status_code = 400
    code = "INVALID_SIGNATURE"


class MalformedEventError(SettlementError):
    status_code = 400
    code = "MALFORMED_EVENT"


class ConfigurationError(SettlementError):
    status_code = 500
    code = "SERVER_MISCONFIGURED"


class PersistenceWarning(UserWarning):
    """Local bookkeeping failed after the processor accepted the charge."""


# ── Handlers ──────────────────────────────────────────────────────────────────

_STATUS_CODE_MAP: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def error_body(code: str, message: str, request_id: str | None) -> dict:
    return {"error": {"code": code, "message": message, "request_id": request_id}}


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            logger.error("%s (request_id=%s): %s", exc.code, request_id, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code, exc.message, request_id),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)

        if isinstance(exc.detail, dict):
            body = {"error": {**exc.detail, "request_id": request_id}}
        else:
            body = error_body(
                _STATUS_CODE_MAP.get(exc.status_code, "ERROR"), str(exc.detail), request_id
            )

        return JSONResponse(
            status_code=exc.status_code,
            content=body,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)

        fields = []
        for err in exc.errors():
            loc = " -> ".join(str(part) for part in err["loc"])
            fields.append({"field": loc, "message": err["msg"], "type": err["type"]})

        body = error_body(
            "VALIDATION_ERROR", f"{len(fields)} validation error(s) in your request.", request_id
        )
        body["error"]["details"] = fields
        return JSONResponse(status_code=422, content=body)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        logger.exception("Unhandled error (request_id=%s)", request_id)

        return JSONResponse(
            status_code=500,
            content=error_body(
                "INTERNAL_ERROR",
                "An unexpected error occurred. "
                "If this persists, contact support with the request_id.",
                request_id,
            ),
        )
