import asyncio
import unittest

from bookshop.consumers import ConsumerHost, OrderPlacedConsumer, PaymentProcessedConsumer
from bookshop.core.config import ServiceRole, settings
from bookshop.events import Queue
from bookshop.main import build_workers, monitor_background_tasks, stop_workers
from bookshop.models import PaymentMethod
from bookshop.workers import OutboxRelay

from support import FakeBroker, make_database


class TestBuildWorkers(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_database()
        self.broker = FakeBroker()

    def tearDown(self) -> None:
        self.db.dispose()

    def test_order_role_only_relays(self) -> None:
        workers = build_workers(ServiceRole.ORDER, self.db, self.broker, None, settings)
        self.assertEqual([type(w) for w in workers], [OutboxRelay])

    def test_payment_role_consumes_order_queue_and_relays(self) -> None:
        consumer, relay = build_workers(ServiceRole.PAYMENT, self.db, self.broker, None, settings)

        self.assertIsInstance(consumer, ConsumerHost)
        self.assertIs(consumer.queue, Queue.ORDER_PLACED)
        self.assertIsInstance(consumer.handler, OrderPlacedConsumer)
        self.assertEqual(consumer.handler.method, PaymentMethod(settings.PAYMENT_DEFAULT_METHOD))
        self.assertEqual(consumer.name, "consumer:OrderQueue")
        self.assertIsInstance(relay, OutboxRelay)

    def test_catalog_role_consumes_edit_book_count(self) -> None:
        [consumer] = build_workers(ServiceRole.CATALOG, self.db, self.broker, None, settings)

        self.assertIs(consumer.queue, Queue.PAYMENT_PROCESSED)
        self.assertIsInstance(consumer.handler, PaymentProcessedConsumer)
        self.assertEqual(consumer.max_delivery_attempts, settings.CONSUMER_MAX_DELIVERY_ATTEMPTS)


class Worker:
    def __init__(self, name: str, honours_stop: bool = True):
        self.name = name
        self.honours_stop = honours_stop
        self.stop_requested = asyncio.Event()

    def stop(self) -> None:
        self.stop_requested.set()

    async def run(self) -> None:
        if self.honours_stop:
            await self.stop_requested.wait()
        else:
            await asyncio.Event().wait()


class TestShutdown(unittest.IsolatedAsyncioTestCase):
    async def test_stop_then_cancel_after_grace(self) -> None:
        polite = Worker("polite")
        stuck = Worker("stuck", honours_stop=False)
        tasks = [
            asyncio.create_task(polite.run(), name=polite.name),
            asyncio.create_task(stuck.run(), name=stuck.name),
        ]

        await stop_workers([polite, stuck], tasks, grace_seconds=0.05)

        self.assertFalse(tasks[0].cancelled())
        self.assertTrue(tasks[0].done())
        self.assertTrue(tasks[1].cancelled())

    async def test_monitor_returns_once_all_tasks_finished(self) -> None:
        async def crash():
            raise RuntimeError("boom")

        async def finish():
            return None

        tasks = [
            asyncio.create_task(crash(), name="crash"),
            asyncio.create_task(finish(), name="finish"),
        ]

        await asyncio.wait_for(monitor_background_tasks(*tasks, interval=0.01), timeout=1.0)

        self.assertIsInstance(tasks[0].exception(), RuntimeError)
