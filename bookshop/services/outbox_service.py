"""
Outbox service - writes messages in the same transaction as the state change
"""

from uuid import uuid4

from sqlmodel import Session

from bookshop.core.logging import get_logger
from bookshop.core.tracing import get_trace_context
from bookshop.events import BaseEventData, Queue, encode_event
from bookshop.models import OutboxEvent

logger = get_logger(__name__)


class OutboxService:
    """Service for transactional outbox pattern"""

    @staticmethod
    def create_event(
        session: Session,
        queue: Queue,
        event_data: BaseEventData,
        partition_key: str | None = None,
    ) -> OutboxEvent:
        """
        Stage ``event_data`` for publication on ``queue``.

        The row is added to ``session`` but not committed: the caller commits
        it together with the business change, and the outbox relay publishes
        it afterwards. Publish therefore never precedes commit, and a broker
        outage after commit delays the message instead of losing it.

        The current trace context is stored with the row so the relay can
        continue the trace when it publishes.
        """
        event_id = str(uuid4())
        trace_context = get_trace_context()

        outbox_event = OutboxEvent(
            event_id=event_id,
            event_type=type(event_data).__name__,
            queue=queue.value,
            partition_key=partition_key,
            payload=encode_event(queue, event_data).decode("utf-8"),
            trace_id=trace_context.trace_id if trace_context else None,
            span_id=trace_context.span_id if trace_context else None,
        )

        session.add(outbox_event)

        logger.info(
            "outbox_event_staged",
            event_id=event_id,
            event_type=outbox_event.event_type,
            queue=queue.value,
            order_id=event_data.order_id,
            has_trace_context=trace_context is not None,
        )

        return outbox_event
