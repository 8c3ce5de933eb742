"""Test doubles shared by the test modules"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from aiokafka.errors import KafkaConnectionError, MessageSizeTooLargeError
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from tenacity import AsyncRetrying, stop_after_attempt

from bookshop.clients.catalog_client import BookSummary
from bookshop.core.broker import AckMode, Delivery, queue_name
from bookshop.core.db import Database
from bookshop.core.errors import ServiceUnavailableError
from bookshop.events import OrderLineItem, OrderPlaced, PaymentProcessed
from bookshop.models import SERVICE_TABLES


def make_database(*roles) -> Database:
    """In-memory SQLite store holding the tables of ``roles`` (all by default)"""
    db = Database(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    tables = []
    for role in roles or SERVICE_TABLES:
        for table in SERVICE_TABLES[role]:
            if table not in tables:
                tables.append(table)
    db.create_tables(tables)
    return db


def storage_failure() -> OperationalError:
    """Error a store raises when it cannot write, e.g. a full disk"""
    return OperationalError("COMMIT", {}, Exception("disk I/O error"))


def order_placed(order_id: int = 1, **overrides) -> OrderPlaced:
    data = dict(
        order_id=order_id,
        customer_id=42,
        total_price=Decimal("20.00"),
        items=[OrderLineItem(book_id=7, quantity=2, unit_price=Decimal("10.00"))],
        created_at_utc=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )
    data.update(overrides)
    return OrderPlaced(**data)


def payment_processed(order_id: int = 1, items=None) -> PaymentProcessed:
    return PaymentProcessed(
        order_id=order_id,
        items=items or [OrderLineItem(book_id=7, quantity=2, unit_price=Decimal("10.00"))],
        processed_at_utc=datetime(2024, 5, 1, 12, 1, tzinfo=timezone.utc),
    )


@dataclass
class FakeRecord:
    topic: str
    value: bytes
    partition: int = 0
    offset: int = 0
    key: bytes | None = None
    headers: list = field(default_factory=list)


class FakeSubscription:
    """Hands out queued records; records commits and seeks"""

    def __init__(self, queue: str, ack_mode: AckMode = AckMode.MANUAL, records=()):
        self.queue = queue
        self.ack_mode = ack_mode
        self.records: deque[FakeRecord] = deque(records)
        self.committed: list[int] = []
        self.seeks: list[int] = []
        self.started = False
        self.stopped = False
        self.starts = 0
        self.stops = 0
        self.fail_fetches = 0
        self._in_flight: dict[int, FakeRecord] = {}
        self._next_offset = len(self.records)

    def _record(self, body: bytes, headers, key) -> FakeRecord:
        record = FakeRecord(self.queue, body, offset=self._next_offset, key=key, headers=headers or [])
        self._next_offset += 1
        return record

    def enqueue(self, body: bytes, headers=None, key: bytes | None = None) -> None:
        self.records.append(self._record(body, headers, key))

    def deliver(self, body: bytes, headers=None, key: bytes | None = None) -> Delivery:
        """Build a delivery for ``body`` without going through fetch()"""
        record = self._record(body, headers, key)
        self._in_flight[record.offset] = record
        return Delivery(self, record)

    async def start(self) -> None:
        self.started = True
        self.starts += 1

    async def stop(self) -> None:
        self.stopped = True
        self.stops += 1

    async def fetch(self, timeout_ms: int) -> Delivery | None:
        if self.fail_fetches > 0:
            self.fail_fetches -= 1
            raise KafkaConnectionError("connection to broker lost")
        if not self.records:
            await asyncio.sleep(0.01)
            return None
        record = self.records.popleft()
        self._in_flight[record.offset] = record
        return Delivery(self, record)

    async def commit(self, delivery: Delivery) -> None:
        self._in_flight.pop(delivery.offset, None)
        self.committed.append(delivery.offset)

    def seek(self, delivery: Delivery) -> None:
        self.seeks.append(delivery.offset)
        record = self._in_flight.pop(delivery.offset, None)
        if record is not None:
            self.records.appendleft(record)


@dataclass
class PublishedMessage:
    queue: str
    body: bytes
    key: bytes | None
    headers: list


class FakeBroker:
    """Stands in for BrokerConnection"""

    def __init__(
        self,
        fail_publishes: int = 0,
        fail_queues: tuple[str, ...] = (),
        reject_publishes: int = 0,
    ):
        self.published: list[PublishedMessage] = []
        self.publish_attempts = 0
        self.reject_publishes = reject_publishes
        self.declared: list[str] = []
        self.subscriptions: dict[str, FakeSubscription] = {}
        self.fail_publishes = fail_publishes
        self.fail_queues = fail_queues

    def reconnect_policy(self) -> AsyncRetrying:
        return AsyncRetrying(stop=stop_after_attempt(1), reraise=True)

    async def declare_queue(self, queue) -> None:
        self.declared.append(queue_name(queue))

    async def publish(self, queue, payload, key=None, headers=None) -> None:
        name = queue_name(queue)
        self.publish_attempts += 1
        if self.fail_publishes > 0 or name in self.fail_queues:
            self.fail_publishes = max(self.fail_publishes - 1, 0)
            raise KafkaConnectionError("broker unavailable")
        if self.reject_publishes > 0:
            self.reject_publishes -= 1
            raise MessageSizeTooLargeError("message too large")
        body = payload.encode("utf-8") if isinstance(payload, str) else payload
        key = key.encode("utf-8") if isinstance(key, str) else key
        self.published.append(PublishedMessage(name, body, key, list(headers or [])))

    def subscribe(self, queue, ack_mode: AckMode = AckMode.MANUAL) -> FakeSubscription:
        name = queue_name(queue)
        if name not in self.subscriptions:
            self.subscriptions[name] = FakeSubscription(name, ack_mode)
        return self.subscriptions[name]

    def messages(self, queue) -> list[PublishedMessage]:
        name = queue_name(queue)
        return [message for message in self.published if message.queue == name]


class FakeCatalog:
    """Catalog lookup backed by a dict"""

    def __init__(self, books=None, unavailable: bool = False):
        self.books: dict[int, BookSummary] = {}
        for book in books or []:
            self.books[book.id] = book
        self.unavailable = unavailable
        self.calls: list[int] = []

    async def get_book(self, book_id: int) -> BookSummary | None:
        self.calls.append(book_id)
        if self.unavailable:
            raise ServiceUnavailableError("Catalog service unavailable.")
        return self.books.get(book_id)


class FakeRedis:
    """Stands in for RedisClient"""

    def __init__(self, available: bool = True):
        self.available = available
        self.store: dict[str, str] = {}

    async def ping(self) -> bool:
        return self.available

    async def exists(self, key: str) -> bool:
        if not self.available:
            raise RedisConnectionError("redis down")
        return key in self.store

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        if not self.available:
            raise RedisConnectionError("redis down")
        self.store[key] = value
        return True
