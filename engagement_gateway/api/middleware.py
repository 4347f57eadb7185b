"""FastAPI middleware for request tracing and metrics"""

import logging
import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from engagement_gateway.infrastructure.observability.metrics import request_duration_histogram

access_logger = logging.getLogger("engagement_gateway.access")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Propagate the caller's X-Request-ID (or mint one) and remember the acting
    user from X-User-Id so handlers and logs can correlate contract actions.
    """

    async def dispatch(self, request: Request, call_next):
        request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.user_id = request.headers.get("x-user-id")

        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request latency histogram and one structured access line per request"""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        # Route templates keep contract ids out of metric labels
        route = getattr(request.scope.get("route"), "path", request.url.path)
        request_duration_histogram.labels(method=request.method, endpoint=route, status=response.status_code).observe(
            elapsed
        )
        access_logger.info(
            "Request handled",
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "user_id": getattr(request.state, "user_id", None),
                "method": request.method,
                "route": route,
                "status": response.status_code,
                "duration_ms": round(elapsed * 1000, 1),
            },
        )
        return response
