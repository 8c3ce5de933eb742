"""
Structured HTTP access log

One ``http_request_completed`` line per request with ECS field names, so
request logs can be queried next to the consumer logs of the same trace.
"""

import time
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

SLOW_REQUEST_MS = 1000


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with method, path, status and duration"""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        start_time = time.time()

        method = request.method
        path = request.url.path
        query_params = str(request.url.query) if request.url.query else None
        client_ip = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent")

        logger.debug(
            "http_request_received",
            **{"http.request.method": method},
            **{"url.path": path},
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "http_request_failed",
                **{"http.request.method": method},
                **{"url.path": path},
                duration_ms=round(duration_ms, 2),
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        status_code = response.status_code

        log_data = {
            "http.request.method": method,
            "url.path": path,
            "url.query": query_params,
            "http.response.status_code": status_code,
            "event.duration": round(duration_ms * 1_000_000, 0),  # ECS uses nanoseconds
            "duration_ms": round(duration_ms, 2),
            "client.ip": client_ip,
            "user_agent.original": user_agent,
        }

        if status_code >= 500:
            logger.error("http_request_completed", **log_data)
        elif duration_ms > SLOW_REQUEST_MS:
            logger.warning("http_request_slow", **log_data)
        else:
            logger.info("http_request_completed", **log_data)

        return response
