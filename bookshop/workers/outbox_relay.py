"""
Outbox relay - publishes committed outbox rows to the broker

Runs inside the order and payment services as a background task, or on its
own with ``python -m bookshop.workers.outbox_relay`` when the relay should be
deployed separately from the HTTP service.

Rows are published oldest first and marked published in their own commit. A
crash between the broker accepting a message and that commit publishes the
row again on the next pass; consumers dedup by order id, so that is safe.

Only a broker rejecting a row counts toward its attempts. When the broker
cannot be reached the pass stops, nothing is counted and the relay waits
``error_backoff`` before trying again.
"""

import asyncio
import signal
import sys
import uuid
from datetime import datetime, UTC

import structlog
from prometheus_client import start_http_server
from sqlmodel import func, select

from bookshop.core.broker import BrokerConnection, is_broker_unavailable
from bookshop.core.config import Settings, settings
from bookshop.core.db import Database
from bookshop.core.logging import configure_logging, get_logger
from bookshop.core.metrics import (
    outbox_events_pending,
    outbox_events_processed_total,
    outbox_retry_attempts_total,
    registry,
)
from bookshop.core.tracing import (
    clear_trace_context,
    create_trace_context,
    set_trace_context,
    trace_headers,
)
from bookshop.models import OutboxEvent

logger = get_logger(__name__)


class OutboxRelay:
    """Polls the outbox table and publishes pending rows"""

    def __init__(
        self,
        db: Database,
        broker: BrokerConnection,
        *,
        batch_size: int = 100,
        poll_interval: float = 1,
        error_backoff: float = 5,
        max_attempts: int = 5,
        error_max_length: int = 500,
    ):
        self.db = db
        self.broker = broker
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.max_attempts = max_attempts
        self.error_max_length = error_max_length
        self.name = "outbox-relay"
        self.broker_available = True
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(cls, db: Database, broker: BrokerConnection, settings: Settings) -> "OutboxRelay":
        return cls(
            db,
            broker,
            batch_size=settings.OUTBOX_BATCH_SIZE,
            poll_interval=settings.OUTBOX_POLL_INTERVAL_SECONDS,
            error_backoff=settings.OUTBOX_ERROR_BACKOFF_SECONDS,
            max_attempts=settings.OUTBOX_MAX_RETRY_ATTEMPTS,
            error_max_length=settings.OUTBOX_ERROR_MESSAGE_MAX_LENGTH,
        )

    def stop(self) -> None:
        self._stopping.set()

    async def run(self) -> None:
        """Main relay loop - runs until stop() is called"""
        logger.info("outbox_relay_starting")

        try:
            while not self._stopping.is_set():
                try:
                    published_count = await self.publish_pending()
                    if published_count > 0:
                        logger.info("outbox_events_published", count=published_count)
                    self.update_pending_count()
                    if self.broker_available:
                        await self._sleep(self.poll_interval)
                    else:
                        await self._sleep(self.error_backoff)
                except Exception as e:
                    logger.error(
                        "outbox_processing_error",
                        error_type=type(e).__name__,
                        error_message=str(e),
                        exc_info=True,
                    )
                    await self._sleep(self.error_backoff)
        except asyncio.CancelledError:
            logger.info("outbox_relay_cancelled")
            raise

        logger.info("outbox_relay_stopped")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def publish_pending(self) -> int:
        """
        Publish up to ``batch_size`` pending rows.

        Each row is claimed with its own ``FOR UPDATE SKIP LOCKED`` transaction
        that stays open until the row is marked, so concurrent relays never
        pick up the same row. A broker outage ends the pass early and does not
        count against the row's attempts.

        Returns:
            Number of rows published
        """
        published_count = 0
        tried: list[uuid.UUID] = []
        self.broker_available = True

        for _ in range(self.batch_size):
            outcome = await self._publish_next(tried)
            if outcome is None:
                break
            if outcome == "published":
                published_count += 1
            elif outcome == "unavailable":
                self.broker_available = False
                break

        return published_count

    async def _publish_next(self, tried: list[uuid.UUID]) -> str | None:
        """Claim and publish the oldest pending row not yet tried in this pass"""
        with self.db.session() as session:
            statement = (
                select(OutboxEvent)
                .where(
                    OutboxEvent.published == False,  # noqa: E712
                    OutboxEvent.dead_lettered == False,  # noqa: E712
                )
                .order_by(OutboxEvent.created_at.asc())  # type: ignore
                .limit(1)
                .with_for_update(skip_locked=True)  # Skip rows locked by other relays
            )
            if tried:
                statement = statement.where(OutboxEvent.id.not_in(tried))  # type: ignore
            event = session.exec(statement).first()
            if event is None:
                return None
            tried.append(event.id)

            trace_context = None
            if event.trace_id:
                trace_context = create_trace_context(
                    trace_id=event.trace_id, parent_span_id=event.span_id
                )
                set_trace_context(trace_context)

            try:
                await self.broker.publish(
                    event.queue,
                    event.payload,
                    key=event.partition_key,
                    headers=trace_headers(trace_context),
                )
            except Exception as e:
                if is_broker_unavailable(e):
                    # Row stays as it was; releasing the lock is enough
                    event_id, queue = event.event_id, event.queue
                    session.rollback()
                    outbox_events_processed_total.labels(status="unavailable").inc()
                    logger.warning(
                        "outbox_broker_unavailable",
                        event_id=event_id,
                        queue=queue,
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                    return "unavailable"

                self._record_rejection(session, event, e)
                return "rejected"
            finally:
                clear_trace_context()
                structlog.contextvars.clear_contextvars()

            event.published = True
            event.published_at = datetime.now(UTC)
            event.updated_at = datetime.now(UTC)
            session.add(event)
            session.commit()

            outbox_events_processed_total.labels(status="success").inc()
            logger.info(
                "outbox_event_published",
                event_id=event.event_id,
                event_type=event.event_type,
                queue=event.queue,
                has_trace_context=trace_context is not None,
            )
            return "published"

    def _record_rejection(self, session, event: OutboxEvent, error: Exception) -> None:
        event.attempts += 1
        event.last_error = str(error)[: self.error_max_length]
        event.updated_at = datetime.now(UTC)
        if event.attempts >= self.max_attempts:
            event.dead_lettered = True
        session.add(event)
        session.commit()

        outbox_events_processed_total.labels(status="failure").inc()
        outbox_retry_attempts_total.labels(queue=event.queue).inc()
        logger.error(
            "outbox_event_publish_failed",
            event_id=event.event_id,
            event_type=event.event_type,
            attempts=event.attempts,
            error_type=type(error).__name__,
            error_message=str(error),
        )

        if event.dead_lettered:
            logger.critical(
                "outbox_event_max_retries_exceeded",
                event_id=event.event_id,
                queue=event.queue,
                attempts=event.attempts,
                needs_manual_intervention=True,
            )

    def update_pending_count(self) -> int:
        with self.db.session() as session:
            count_statement = (
                select(func.count())
                .select_from(OutboxEvent)
                .where(
                    OutboxEvent.published == False,  # noqa: E712
                    OutboxEvent.dead_lettered == False,  # noqa: E712
                )
            )
            pending_count = session.exec(count_statement).one()
        outbox_events_pending.set(pending_count)
        return pending_count


async def main():
    """Entry point for a standalone relay process"""
    configure_logging()

    relay: OutboxRelay | None = None

    def handle_signal(sig, frame):
        logger.info("shutdown_signal_received", signal=sig)
        if relay:
            relay.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info(
        "outbox_relay_main_starting",
        service=settings.SERVICE_NAME,
        environment=settings.ENVIRONMENT,
    )

    start_http_server(settings.METRICS_PORT, registry=registry)
    logger.info("metrics_server_started", port=settings.METRICS_PORT)

    db = Database(settings.SQLALCHEMY_DATABASE_URI)
    try:
        async with BrokerConnection.from_settings(settings) as broker:
            relay = OutboxRelay.from_settings(db, broker, settings)
            await relay.run()
    except Exception as e:
        logger.error(
            "outbox_relay_fatal_error",
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        sys.exit(1)
    finally:
        db.dispose()
    logger.info("outbox_relay_shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
