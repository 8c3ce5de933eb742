"""
Consumer host loop - one supervised background task per subscribed queue

For each delivery the host walks the same steps:

    Received -> Deserialized -> handled -> Acknowledged

and any step can end in Failed:

- a body that does not match the queue's schema is a poison message and goes
  straight to the queue's dead-letter topic;
- any other handler error requeues the delivery with a growing backoff, and
  after CONSUMER_MAX_DELIVERY_ATTEMPTS it is dead-lettered instead;
- the acknowledgement is only sent after the handler returned, so a crash or
  a cancelled task never acknowledges a message whose side effects are not
  committed.

Stopping is cooperative: ``stop()`` lets the in-flight delivery reach its
ack/requeue decision before the subscription is closed. Losing the broker
closes the subscription and re-opens it under the connection's bounded
reconnect policy.
"""

import asyncio
from typing import Awaitable, Callable

import structlog
from aiokafka.errors import KafkaError

from bookshop.core.broker import AckMode, BrokerConnection, Delivery, Subscription
from bookshop.core.config import Settings
from bookshop.core.errors import DeserializationError
from bookshop.core.logging import get_logger
from bookshop.core.metrics import broker_messages_consumed_total, broker_reconnects_total
from bookshop.core.tracing import clear_trace_context, extract_trace_context, set_trace_context
from bookshop.events import BaseEventData, Queue, decode_event

logger = get_logger(__name__)

# Handlers may return "duplicate" when the message changed nothing
Handler = Callable[[BaseEventData], Awaitable[str | None]]

ERROR_MESSAGE_MAX_LENGTH = 500


class ConsumerHost:
    """Owns one queue subscription for the lifetime of the service"""

    def __init__(
        self,
        broker: BrokerConnection,
        queue: Queue,
        handler: Handler,
        *,
        max_delivery_attempts: int = 5,
        retry_backoff_seconds: float = 1.0,
        poll_timeout_ms: int = 1000,
        ack_mode: AckMode = AckMode.MANUAL,
    ):
        self.broker = broker
        self.queue = queue
        self.handler = handler
        self.max_delivery_attempts = max_delivery_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.poll_timeout_ms = poll_timeout_ms
        self.ack_mode = ack_mode
        self.name = f"consumer:{queue.value}"
        self._stopping = asyncio.Event()
        self._attempts: dict[tuple[str, int, int], int] = {}

    @classmethod
    def from_settings(
        cls, broker: BrokerConnection, queue: Queue, handler: Handler, settings: Settings
    ) -> "ConsumerHost":
        return cls(
            broker,
            queue,
            handler,
            max_delivery_attempts=settings.CONSUMER_MAX_DELIVERY_ATTEMPTS,
            retry_backoff_seconds=settings.CONSUMER_RETRY_BACKOFF_SECONDS,
            poll_timeout_ms=settings.CONSUMER_POLL_TIMEOUT_MS,
        )

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Ask the loop to finish the current delivery and exit"""
        self._stopping.set()

    async def run(self) -> None:
        """Main consumer loop - runs as background task"""
        logger.info("consumer_host_starting", queue=self.queue.value)

        try:
            await self._declare()
            while not self.stopping:
                subscription = await self._open()
                try:
                    await self._consume(subscription)
                except KafkaError as e:
                    broker_reconnects_total.labels(queue=self.queue.value).inc()
                    logger.warning(
                        "subscription_lost",
                        queue=self.queue.value,
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                finally:
                    await self._close(subscription)
        except asyncio.CancelledError:
            logger.info("consumer_host_cancelled", queue=self.queue.value)
            raise
        except Exception as e:
            logger.error(
                "consumer_host_crashed",
                queue=self.queue.value,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            raise

        logger.info("consumer_host_stopped", queue=self.queue.value)

    async def _declare(self) -> None:
        async for attempt in self.broker.reconnect_policy():
            with attempt:
                await self.broker.declare_queue(self.queue)
                await self.broker.declare_queue(self.queue.dead_letter)

    async def _open(self) -> Subscription:
        async for attempt in self.broker.reconnect_policy():
            with attempt:
                subscription = self.broker.subscribe(self.queue, self.ack_mode)
                try:
                    await subscription.start()
                except Exception:
                    await self._close(subscription)
                    raise
        return subscription

    async def _close(self, subscription: Subscription) -> None:
        try:
            await subscription.stop()
        except KafkaError as e:
            logger.warning(
                "subscription_close_failed",
                queue=self.queue.value,
                error_type=type(e).__name__,
                error_message=str(e),
            )

    async def _consume(self, subscription: Subscription) -> None:
        while not self.stopping:
            delivery = await subscription.fetch(self.poll_timeout_ms)
            if delivery is not None:
                await self.process(delivery)

    async def process(self, delivery: Delivery) -> str:
        """
        Take one delivery to a settled state.

        Returns the outcome: "success", "duplicate", "requeued" or
        "dead_lettered".
        """
        trace_context = extract_trace_context(delivery.headers)
        if trace_context:
            set_trace_context(trace_context)
        structlog.contextvars.bind_contextvars(
            queue=delivery.queue, partition=delivery.partition, offset=delivery.offset
        )

        try:
            try:
                event = decode_event(self.queue, delivery.body)
            except DeserializationError as e:
                return await self._fail(delivery, e)

            structlog.contextvars.bind_contextvars(order_id=event.order_id)
            try:
                outcome = await self.handler(event) or "success"
            except Exception as e:
                return await self._fail(delivery, e)

            await delivery.ack()
            self._attempts.pop(delivery.delivery_id, None)
            broker_messages_consumed_total.labels(queue=self.queue.value, status=outcome).inc()
            logger.info(
                "message_processed",
                outcome=outcome,
                has_trace_context=trace_context is not None,
            )
            return outcome
        finally:
            clear_trace_context()
            structlog.contextvars.clear_contextvars()

    async def _fail(self, delivery: Delivery, error: Exception) -> str:
        attempts = self._attempts.get(delivery.delivery_id, 0) + 1
        self._attempts[delivery.delivery_id] = attempts

        poison = isinstance(error, DeserializationError)
        if poison or attempts >= self.max_delivery_attempts:
            return await self._dead_letter(delivery, error, attempts)

        delivery.requeue()
        broker_messages_consumed_total.labels(queue=self.queue.value, status="requeued").inc()
        delay = self.retry_backoff_seconds * (2 ** (attempts - 1))
        logger.warning(
            "message_requeued",
            attempts=attempts,
            max_attempts=self.max_delivery_attempts,
            retry_in_seconds=delay,
            error_type=type(error).__name__,
            error_message=str(error),
        )
        await self._backoff(delay)
        return "requeued"

    async def _dead_letter(self, delivery: Delivery, error: Exception, attempts: int) -> str:
        headers = delivery.headers + [
            ("x-error-type", type(error).__name__.encode("utf-8")),
            ("x-error-message", str(error)[:ERROR_MESSAGE_MAX_LENGTH].encode("utf-8")),
            ("x-delivery-attempts", str(attempts).encode("utf-8")),
            ("x-source-queue", self.queue.value.encode("utf-8")),
        ]
        try:
            await self.broker.publish(
                self.queue.dead_letter, delivery.body, key=delivery.key, headers=headers
            )
        except (KafkaError, RuntimeError) as e:
            # Keep the message; it will come round again
            delivery.requeue()
            logger.error(
                "dead_letter_publish_failed",
                dead_letter_queue=self.queue.dead_letter,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            await self._backoff(self.retry_backoff_seconds)
            return "requeued"

        await delivery.ack()
        self._attempts.pop(delivery.delivery_id, None)
        broker_messages_consumed_total.labels(queue=self.queue.value, status="dead_lettered").inc()
        logger.error(
            "message_dead_lettered",
            dead_letter_queue=self.queue.dead_letter,
            attempts=attempts,
            poison=isinstance(error, DeserializationError),
            error_type=type(error).__name__,
            error_message=str(error),
        )
        return "dead_lettered"

    async def _backoff(self, delay: float) -> None:
        # Wakes early when stop() is called
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
