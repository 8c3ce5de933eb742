"""
W3C trace context propagation across HTTP and broker hops.

An order's journey crosses three services and two queues. The order request
starts (or continues) a trace; the trace id is stored on the outbox row, put
into the ``traceparent`` header by the relay, and picked up again by the
consuming service, so every log line for one order shares a trace id.

traceparent format: ``00-{trace_id}-{span_id}-{flags}``
"""

import secrets
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional

import structlog

TRACEPARENT_HEADER = "traceparent"

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace.id", default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar("span.id", default=None)
parent_span_id_var: ContextVar[Optional[str]] = ContextVar(
    "parent_span_id", default=None
)


@dataclass
class TraceContext:
    trace_id: str  # 32 hex characters
    span_id: str  # 16 hex characters
    parent_span_id: Optional[str] = None
    sampled: bool = True
    version: str = "00"

    def to_traceparent_header(self) -> str:
        trace_flags = "01" if self.sampled else "00"
        return f"{self.version}-{self.trace_id}-{self.span_id}-{trace_flags}"

    @classmethod
    def from_traceparent_header(cls, header_value: str) -> Optional["TraceContext"]:
        """
        Parse a traceparent header.

        The sender's span becomes our parent and we open a new span. Returns
        None for anything malformed; a bad header must never fail a request
        or a message.
        """
        parts = header_value.strip().split("-")
        if len(parts) != 4:
            return None

        version, trace_id, sender_span_id, trace_flags = parts
        if version != "00":
            return None
        if len(trace_id) != 32 or trace_id == "0" * 32 or not _is_hex(trace_id):
            return None
        if (
            len(sender_span_id) != 16
            or sender_span_id == "0" * 16
            or not _is_hex(sender_span_id)
        ):
            return None
        if len(trace_flags) != 2 or not _is_hex(trace_flags):
            return None

        return cls(
            trace_id=trace_id,
            span_id=generate_span_id(),
            parent_span_id=sender_span_id,
            sampled=bool(int(trace_flags, 16) & 0x01),
        )


def _is_hex(value: str) -> bool:
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def generate_trace_id() -> str:
    return secrets.token_bytes(16).hex()


def generate_span_id() -> str:
    return secrets.token_bytes(8).hex()


def create_trace_context(
    trace_id: Optional[str] = None,
    parent_span_id: Optional[str] = None,
    sampled: bool = True,
) -> TraceContext:
    """Start a new trace, or open a new span in an existing one."""
    return TraceContext(
        trace_id=trace_id or generate_trace_id(),
        span_id=generate_span_id(),
        parent_span_id=parent_span_id,
        sampled=sampled,
    )


def set_trace_context(context: TraceContext) -> None:
    """Make ``context`` current and bind it to structlog."""
    trace_id_var.set(context.trace_id)
    span_id_var.set(context.span_id)
    parent_span_id_var.set(context.parent_span_id)
    structlog.contextvars.bind_contextvars(
        **{"trace.id": context.trace_id},
        **{"span.id": context.span_id},
        parent_span_id=context.parent_span_id,
    )


def get_trace_context() -> Optional[TraceContext]:
    trace_id = trace_id_var.get()
    if not trace_id:
        return None

    return TraceContext(
        trace_id=trace_id,
        span_id=span_id_var.get() or generate_span_id(),
        parent_span_id=parent_span_id_var.get(),
    )


def clear_trace_context() -> None:
    trace_id_var.set(None)
    span_id_var.set(None)
    parent_span_id_var.set(None)


def trace_headers(context: Optional[TraceContext]) -> list[tuple[str, bytes]]:
    """Broker headers carrying ``context``; empty when there is no trace."""
    if context is None:
        return []
    return [(TRACEPARENT_HEADER, context.to_traceparent_header().encode("utf-8"))]


def extract_trace_context(
    headers: list[tuple[str, bytes]] | None,
) -> Optional[TraceContext]:
    """Read the traceparent header of a consumed message, if any."""
    for key, value in headers or []:
        if key == TRACEPARENT_HEADER:
            try:
                return TraceContext.from_traceparent_header(value.decode("utf-8"))
            except UnicodeDecodeError:
                return None
    return None
