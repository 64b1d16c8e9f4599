"""Request middleware for tracing and logging."""

import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from agentdesk.logging import bind_context, clear_context, get_logger
from agentdesk.metrics import record_request

logger = get_logger(__name__)

USER_HEADER = "X-User-ID"


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Adds request tracing and structured logging.

    - Generates a request_id per request
    - Takes correlation_id from X-Correlation-ID or generates one
    - Binds the upstream-authenticated user id into the log context
    - Logs request completion with timing and records request metrics
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        request_id = str(uuid.uuid4())[:8]
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())[:8]

        clear_context()
        bind_context(
            request_id=request_id,
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        user_id = request.headers.get(USER_HEADER)
        if user_id:
            bind_context(user_id=user_id)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start_time) * 1000

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            # /metrics scrapes would otherwise dominate the request counters
            if not request.url.path.startswith("/metrics"):
                record_request(
                    method=request.method,
                    path=_route_template(request),
                    status_code=response.status_code,
                    duration=duration_ms / 1000,
                )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "request_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
            )
            raise

        finally:
            clear_context()


def _route_template(request: Request) -> str:
    """Label metrics by route template so task and session ids don't explode cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path
