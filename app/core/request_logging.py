"""
Request logging middleware.
Logs method, path, status and timing. NEVER logs bodies or headers.
"""
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.metrics import metrics

logger = logging.getLogger("build.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Adds X-Request-Id and logs one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start_time = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Request-Id"] = request_id
        metrics.inc("requests_total")

        # Skip health checks to reduce noise
        if request.url.path != "/health":
            logger.info(
                f"request request_id={request_id}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )

        return response
