"""
HTTP request metrics

Counts requests per method, templated endpoint and status class, and records
their latency.
"""

import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from bookshop.core.metrics import http_request_duration_seconds, http_requests_total


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.numeric_pattern = re.compile(r"/\d+(/|$)")

    def _template_path(self, path: str) -> str:
        """
        Replace numeric ids so label cardinality stays bounded

        Examples:
            /api/v1/orders/42 -> /api/v1/orders/{id}
            /api/v1/health/ready -> /api/v1/health/ready
        """
        return self.numeric_pattern.sub(r"/{id}\1", path)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = self._template_path(request.url.path)

        start_time = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            http_requests_total.labels(
                method=method, endpoint=endpoint, status_code=f"{status_code // 100}xx"
            ).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.time() - start_time
            )

        return response
