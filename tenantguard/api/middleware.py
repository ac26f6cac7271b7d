"""Request-logging middleware for FastAPI."""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from tenantguard.audit.context import get_request_context

logger = logging.getLogger("tenantguard.api")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach the request ID and log method/path/status/duration.

    The ID comes from the audit request context when one is open, so
    log lines and audit events of a request can be correlated.
    """

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        ctx = get_request_context()
        request_id = ctx.request_id if ctx is not None else str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "method=%s path=%s status_code=%s duration_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )

        response.headers["X-Request-ID"] = request_id
        return response
