"""Request logging middleware with per-request ids."""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("settlement.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = uuid.uuid4().hex[:12]
        request.state.request_id = request_id

        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        response.headers["X-Request-ID"] = request_id

        user_id = getattr(request.state, "user_id", None) or "-"

        logger.info(
            "%s %s %d %.1fms user=%s req=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            user_id,
            request_id,
        )

        return response
