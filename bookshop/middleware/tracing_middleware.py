"""
W3C trace context for incoming HTTP requests

An order request either continues the caller's trace (``traceparent`` header)
or starts a new one. The context is stored in contextvars, so the outbox row
written by the request picks up the same trace id and the relay carries it on
to the payment and catalog services.
"""

import uuid
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from bookshop.core.tracing import (
    TRACEPARENT_HEADER,
    TraceContext,
    clear_trace_context,
    create_trace_context,
    set_trace_context,
)

logger = structlog.get_logger(__name__)


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Extracts or starts a trace for every request.

    Must be registered last so it runs first and the access log written by
    LoggingMiddleware already carries trace.id.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        traceparent_header = request.headers.get(TRACEPARENT_HEADER)

        trace_context: TraceContext | None = None
        if traceparent_header:
            trace_context = TraceContext.from_traceparent_header(traceparent_header)
            if trace_context is None:
                logger.warning("trace_context_invalid_header", traceparent=traceparent_header)

        if trace_context is None:
            trace_context = create_trace_context()
            logger.debug("trace_context_generated", **{"trace.id": trace_context.trace_id})

        # Unique to this HTTP request; retries of the same action share trace.id
        request_id = str(uuid.uuid4())

        set_trace_context(trace_context)
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
            response.headers["X-Trace-Id"] = trace_context.trace_id
            response.headers["X-Request-Id"] = request_id
            response.headers[TRACEPARENT_HEADER] = trace_context.to_traceparent_header()
            return response
        finally:
            structlog.contextvars.clear_contextvars()
            clear_trace_context()
