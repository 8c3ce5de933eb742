"""
Broker client: one explicitly owned connection per service process.

Queues map onto Kafka topics. A queue is declared by creating its topic
(creating one that already exists is a no-op), a publish returns once the
broker has accepted the message, and a subscription hands out one delivery at
a time.

Acknowledgement model
---------------------
Under ``AckMode.MANUAL`` a delivery is only acknowledged by committing its
offset + 1. Until then the consumer group still owns the old offset, so a
dropped connection or a restart delivers the message again, to this consumer
or to another member of the group. ``Delivery.requeue()`` seeks back to the
delivery's offset, so the next fetch returns the same message.

QueueDurability trade-off
-------------------------
Topics are created with ``KAFKA_REPLICATION_FACTOR`` replicas (default 1) and
``KAFKA_TOPIC_RETENTION_MS`` retention. With a single replica, losing the
broker's disk loses accepted messages that no consumer has acknowledged yet,
and anything older than the retention window is gone even if never consumed.
This is an accepted limitation of the deployment, not something the
choreography tries to repair.
"""

import time
from dataclasses import dataclass
from enum import Enum

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import (
    KafkaConnectionError,
    KafkaError,
    KafkaTimeoutError,
    KafkaUnavailableError,
    ProducerClosed,
    TopicAlreadyExistsError,
)
from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bookshop.core.config import Settings
from bookshop.core.logging import get_logger
from bookshop.core.metrics import (
    broker_messages_published_total,
    broker_publish_duration_seconds,
)

logger = get_logger(__name__)


def queue_name(queue) -> str:
    """Accept a ``Queue`` member or a plain topic name"""
    return queue.value if isinstance(queue, Enum) else str(queue)


def is_broker_unavailable(error: BaseException) -> bool:
    """
    True when ``error`` says the broker could not be reached, as opposed to
    the broker rejecting the message. Retrying later can fix the former.
    """
    if isinstance(
        error, (KafkaConnectionError, KafkaTimeoutError, KafkaUnavailableError, ProducerClosed)
    ):
        return True
    if isinstance(error, KafkaError):
        return error.retriable
    # publish() on a connection that is not open
    return type(error) is RuntimeError or isinstance(error, (OSError, TimeoutError))


class AckMode(str, Enum):
    MANUAL = "manual"  # ack after the side effect is durable
    AUTO = "auto"  # broker considers the message handled on delivery


@dataclass(frozen=True)
class DeclaredQueue:
    name: str
    partitions: int
    replication_factor: int
    retention_ms: int


class Delivery:
    """A single message handed out by a subscription"""

    def __init__(self, subscription: "Subscription", record):
        self._subscription = subscription
        self._record = record
        self.queue: str = record.topic
        self.partition: int = record.partition
        self.offset: int = record.offset
        self.key: bytes | None = record.key
        self.body: bytes = record.value or b""
        self.headers: list[tuple[str, bytes]] = list(record.headers or [])
        self.settled = False

    @property
    def delivery_id(self) -> tuple[str, int, int]:
        return (self.queue, self.partition, self.offset)

    async def ack(self) -> None:
        """Remove the message from the queue for this consumer group"""
        await self._subscription.commit(self)
        self.settled = True

    def requeue(self) -> None:
        """Leave the message on the queue and deliver it again"""
        self._subscription.seek(self)
        self.settled = True


class Subscription:
    """A consumer-group membership on one queue"""

    def __init__(self, queue: str, consumer: AIOKafkaConsumer, ack_mode: AckMode):
        self.queue = queue
        self.ack_mode = ack_mode
        self._consumer = consumer

    async def start(self) -> None:
        await self._consumer.start()
        logger.info("subscription_started", queue=self.queue, ack_mode=self.ack_mode.value)

    async def stop(self) -> None:
        await self._consumer.stop()
        logger.info("subscription_stopped", queue=self.queue)

    async def fetch(self, timeout_ms: int) -> Delivery | None:
        """Wait up to ``timeout_ms`` for the next message"""
        batches = await self._consumer.getmany(timeout_ms=timeout_ms, max_records=1)
        for records in batches.values():
            for record in records:
                return Delivery(self, record)
        return None

    async def commit(self, delivery: Delivery) -> None:
        if self.ack_mode is AckMode.AUTO:
            return
        tp = TopicPartition(delivery.queue, delivery.partition)
        await self._consumer.commit({tp: delivery.offset + 1})

    def seek(self, delivery: Delivery) -> None:
        tp = TopicPartition(delivery.queue, delivery.partition)
        self._consumer.seek(tp, delivery.offset)


class BrokerConnection:
    """
    Producer, admin client and consumer factory for one service.

    Created in the application lifespan and passed to whatever needs it;
    ``close()`` is called on shutdown.

    Usage:
        async with BrokerConnection.from_settings(settings) as broker:
            await broker.declare_queue(Queue.ORDER_PLACED)
            await broker.publish(Queue.ORDER_PLACED, body)
    """

    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str,
        group_id: str,
        partitions: int = 1,
        replication_factor: int = 1,
        retention_ms: int = 604800000,
        reconnect_attempts: int = 10,
        reconnect_max_wait: int = 30,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.group_id = group_id
        self.partitions = partitions
        self.replication_factor = replication_factor
        self.retention_ms = retention_ms
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_max_wait = reconnect_max_wait
        self.producer: AIOKafkaProducer | None = None
        self.admin: AIOKafkaAdminClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrokerConnection":
        return cls(
            bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
            client_id=settings.SERVICE_NAME,
            group_id=settings.CONSUMER_GROUP_ID,
            partitions=settings.KAFKA_TOPIC_PARTITIONS,
            replication_factor=settings.KAFKA_REPLICATION_FACTOR,
            retention_ms=settings.KAFKA_TOPIC_RETENTION_MS,
            reconnect_attempts=settings.BROKER_RECONNECT_MAX_ATTEMPTS,
            reconnect_max_wait=settings.BROKER_RECONNECT_MAX_WAIT_SECONDS,
        )

    @property
    def is_connected(self) -> bool:
        return self.producer is not None

    def reconnect_policy(self) -> AsyncRetrying:
        """Bounded exponential backoff used for every broker (re)connect"""
        return AsyncRetrying(
            stop=stop_after_attempt(self.reconnect_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=self.reconnect_max_wait),
            retry=retry_if_exception_type((KafkaError, OSError)),
            reraise=True,
        )

    async def connect(self) -> "BrokerConnection":
        """Start the producer and admin client"""
        async for attempt in self.reconnect_policy():
            with attempt:
                producer = AIOKafkaProducer(
                    bootstrap_servers=self.bootstrap_servers,
                    client_id=self.client_id,
                    acks="all",  # Wait for all replicas
                    request_timeout_ms=30000,
                )
                admin = AIOKafkaAdminClient(
                    bootstrap_servers=self.bootstrap_servers, client_id=self.client_id
                )
                try:
                    await producer.start()
                    await admin.start()
                except Exception:
                    # Neither client is kept unless both started
                    await admin.close()
                    await producer.stop()
                    logger.warning(
                        "broker_connect_failed",
                        bootstrap_servers=self.bootstrap_servers,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise
                self.producer = producer
                self.admin = admin

        logger.info("broker_connected", bootstrap_servers=self.bootstrap_servers)
        return self

    async def close(self) -> None:
        if self.admin:
            await self.admin.close()
            self.admin = None
        if self.producer:
            await self.producer.stop()
            self.producer = None
        logger.info("broker_closed")

    async def __aenter__(self) -> "BrokerConnection":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def declare_queue(self, queue) -> DeclaredQueue:
        """Create the queue's topic unless it already exists"""
        if not self.admin:
            raise RuntimeError("Broker connection not open")

        name = queue_name(queue)
        declared = DeclaredQueue(
            name=name,
            partitions=self.partitions,
            replication_factor=self.replication_factor,
            retention_ms=self.retention_ms,
        )
        existing = await self.admin.list_topics()
        if name in existing:
            logger.debug("queue_already_declared", queue=name)
            return declared

        try:
            await self.admin.create_topics(
                [
                    NewTopic(
                        name=name,
                        num_partitions=self.partitions,
                        replication_factor=self.replication_factor,
                        topic_configs={"retention.ms": str(self.retention_ms)},
                    )
                ]
            )
            logger.info(
                "queue_declared",
                queue=name,
                partitions=self.partitions,
                replication_factor=self.replication_factor,
            )
        except TopicAlreadyExistsError:
            # Another service instance won the race
            logger.debug("queue_already_declared", queue=name)
        return declared

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(KafkaError),
        reraise=True,
    )
    async def publish(
        self,
        queue,
        payload: bytes | str,
        key: str | bytes | None = None,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> None:
        """
        Publish ``payload`` to ``queue``.

        Returns once the broker has accepted the message; says nothing about
        whether any consumer has processed it.
        """
        if not self.producer:
            raise RuntimeError("Broker connection not open")

        name = queue_name(queue)
        body = payload.encode("utf-8") if isinstance(payload, str) else payload

        start_time = time.time()
        try:
            await self.producer.send_and_wait(
                name,
                value=body,
                key=key.encode("utf-8") if isinstance(key, str) else key,
                headers=headers or None,
            )
        except KafkaError as e:
            broker_messages_published_total.labels(queue=name, status="failure").inc()
            logger.error(
                "message_publish_failed",
                queue=name,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise

        broker_messages_published_total.labels(queue=name, status="success").inc()
        broker_publish_duration_seconds.labels(queue=name).observe(
            time.time() - start_time
        )
        logger.debug("message_published", queue=name, size=len(body))

    def subscribe(self, queue, ack_mode: AckMode = AckMode.MANUAL) -> Subscription:
        """Build a (not yet started) subscription to ``queue``"""
        name = queue_name(queue)
        consumer = AIOKafkaConsumer(
            name,
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            group_id=self.group_id,
            enable_auto_commit=ack_mode is AckMode.AUTO,
            auto_offset_reset="earliest",  # Start from beginning if no offset
            session_timeout_ms=30000,
            max_poll_interval_ms=300000,
        )
        return Subscription(name, consumer, ack_mode)
