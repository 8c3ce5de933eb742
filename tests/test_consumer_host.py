import asyncio
import unittest

from bookshop.consumers import ConsumerHost
from bookshop.core.errors import PersistenceError
from bookshop.core.metrics import registry
from bookshop.core.tracing import create_trace_context, get_trace_context, trace_headers
from bookshop.events import Queue, encode_event

from support import FakeBroker, FakeSubscription, order_placed


class RecordingHandler:
    def __init__(self, failures: int = 0, outcome: str | None = None):
        self.failures = failures
        self.outcome = outcome
        self.events = []
        self.trace_ids = []

    async def __call__(self, event):
        trace_context = get_trace_context()
        self.trace_ids.append(trace_context.trace_id if trace_context else None)
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("database unavailable")
        self.events.append(event)
        return self.outcome


def header(headers, name: str) -> str:
    return dict(headers)[name].decode("utf-8")


def reconnects(queue: Queue) -> float:
    return registry.get_sample_value("broker_reconnects_total", {"queue": queue.value}) or 0.0


class TestConsumerHostProcess(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.broker = FakeBroker()
        self.subscription = FakeSubscription(Queue.ORDER_PLACED.value)
        self.body = encode_event(Queue.ORDER_PLACED, order_placed(order_id=11))

    def host(self, handler, max_delivery_attempts: int = 3) -> ConsumerHost:
        return ConsumerHost(
            self.broker,
            Queue.ORDER_PLACED,
            handler,
            max_delivery_attempts=max_delivery_attempts,
            retry_backoff_seconds=0,
            poll_timeout_ms=10,
        )

    async def test_handled_message_is_acknowledged(self) -> None:
        handler = RecordingHandler()
        delivery = self.subscription.deliver(self.body)

        outcome = await self.host(handler).process(delivery)

        self.assertEqual(outcome, "success")
        self.assertEqual([e.order_id for e in handler.events], [11])
        self.assertEqual(self.subscription.committed, [delivery.offset])
        self.assertTrue(delivery.settled)

    async def test_duplicate_is_acknowledged(self) -> None:
        delivery = self.subscription.deliver(self.body)

        outcome = await self.host(RecordingHandler(outcome="duplicate")).process(delivery)

        self.assertEqual(outcome, "duplicate")
        self.assertEqual(self.subscription.committed, [delivery.offset])

    async def test_poison_message_is_dead_lettered_at_once(self) -> None:
        handler = RecordingHandler()
        delivery = self.subscription.deliver(b'{"orderId": "x"}', key=b"11")

        outcome = await self.host(handler).process(delivery)

        self.assertEqual(outcome, "dead_lettered")
        self.assertEqual(handler.events, [])
        self.assertEqual(self.subscription.committed, [delivery.offset])

        [dead] = self.broker.messages(Queue.ORDER_PLACED.dead_letter)
        self.assertEqual(dead.body, b'{"orderId": "x"}')
        self.assertEqual(dead.key, b"11")
        self.assertEqual(header(dead.headers, "x-error-type"), "DeserializationError")
        self.assertEqual(header(dead.headers, "x-delivery-attempts"), "1")
        self.assertEqual(header(dead.headers, "x-source-queue"), "OrderQueue")

    async def test_failing_handler_is_retried_then_dead_lettered(self) -> None:
        handler = RecordingHandler(failures=10)
        host = self.host(handler, max_delivery_attempts=3)
        self.subscription.enqueue(self.body)

        outcomes = []
        for _ in range(3):
            delivery = await self.subscription.fetch(10)
            outcomes.append(await host.process(delivery))

        self.assertEqual(outcomes, ["requeued", "requeued", "dead_lettered"])
        self.assertEqual(self.subscription.seeks, [0, 0])
        self.assertEqual(self.subscription.committed, [0])

        [dead] = self.broker.messages(Queue.ORDER_PLACED.dead_letter)
        self.assertEqual(dead.body, self.body)
        self.assertEqual(header(dead.headers, "x-error-type"), "PersistenceError")
        self.assertEqual(header(dead.headers, "x-error-message"), "database unavailable")
        self.assertEqual(header(dead.headers, "x-delivery-attempts"), "3")

    async def test_transient_failure_recovers_on_redelivery(self) -> None:
        handler = RecordingHandler(failures=1)
        host = self.host(handler)
        self.subscription.enqueue(self.body)

        first = await host.process(await self.subscription.fetch(10))
        second = await host.process(await self.subscription.fetch(10))

        self.assertEqual((first, second), ("requeued", "success"))
        self.assertEqual(len(handler.events), 1)
        self.assertEqual(self.subscription.committed, [0])
        self.assertEqual(self.broker.messages(Queue.ORDER_PLACED.dead_letter), [])

    async def test_message_kept_when_dead_letter_publish_fails(self) -> None:
        self.broker.fail_queues = (Queue.ORDER_PLACED.dead_letter,)
        delivery = self.subscription.deliver(b"not json")

        outcome = await self.host(RecordingHandler()).process(delivery)

        self.assertEqual(outcome, "requeued")
        self.assertEqual(self.subscription.committed, [])
        self.assertEqual(self.subscription.seeks, [delivery.offset])

    async def test_trace_context_is_continued_from_headers(self) -> None:
        sender = create_trace_context()
        handler = RecordingHandler()
        delivery = self.subscription.deliver(self.body, headers=trace_headers(sender))

        await self.host(handler).process(delivery)

        self.assertEqual(handler.trace_ids, [sender.trace_id])
        # Cleared once the delivery is settled
        self.assertIsNone(get_trace_context())


class TestConsumerHostRun(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.broker = FakeBroker()
        self.subscription = self.broker.subscribe(Queue.ORDER_PLACED)

    async def wait_until(self, condition, timeout: float = 2.0) -> None:
        async def poll():
            while not condition():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(poll(), timeout=timeout)

    async def test_consumes_until_stopped(self) -> None:
        handler = RecordingHandler()
        host = ConsumerHost(self.broker, Queue.ORDER_PLACED, handler, poll_timeout_ms=10)
        for order_id in (1, 2):
            self.subscription.enqueue(encode_event(Queue.ORDER_PLACED, order_placed(order_id)))

        task = asyncio.create_task(host.run())
        await self.wait_until(lambda: len(self.subscription.committed) == 2)
        host.stop()
        await asyncio.wait_for(task, timeout=2.0)

        self.assertEqual([e.order_id for e in handler.events], [1, 2])
        self.assertIn("OrderQueue", self.broker.declared)
        self.assertIn("OrderQueue.dead-letter", self.broker.declared)
        self.assertTrue(self.subscription.started)
        self.assertTrue(self.subscription.stopped)

    async def test_lost_subscription_is_reopened(self) -> None:
        handler = RecordingHandler()
        host = ConsumerHost(self.broker, Queue.ORDER_PLACED, handler, poll_timeout_ms=10)
        self.subscription.fail_fetches = 1
        self.subscription.enqueue(encode_event(Queue.ORDER_PLACED, order_placed(3)))
        reconnects_before = reconnects(Queue.ORDER_PLACED)

        task = asyncio.create_task(host.run())
        await self.wait_until(lambda: len(self.subscription.committed) == 1)
        host.stop()
        await asyncio.wait_for(task, timeout=2.0)

        self.assertEqual(self.subscription.starts, 2)
        self.assertEqual(self.subscription.stops, 2)
        self.assertEqual([e.order_id for e in handler.events], [3])
        self.assertEqual(len(self.subscription.committed), 1)
        self.assertEqual(reconnects(Queue.ORDER_PLACED), reconnects_before + 1)

    async def test_cancelled_handler_never_acknowledges(self) -> None:
        entered = asyncio.Event()

        async def blocking_handler(event):
            entered.set()
            await asyncio.Event().wait()

        host = ConsumerHost(self.broker, Queue.ORDER_PLACED, blocking_handler, poll_timeout_ms=10)
        self.subscription.enqueue(encode_event(Queue.ORDER_PLACED, order_placed(1)))

        task = asyncio.create_task(host.run())
        await asyncio.wait_for(entered.wait(), timeout=2.0)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(self.subscription.committed, [])
        self.assertTrue(self.subscription.stopped)
