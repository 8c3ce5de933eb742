import asyncio
import unittest

from sqlmodel import select

from bookshop.core.config import ServiceRole
from bookshop.core.tracing import (
    clear_trace_context,
    create_trace_context,
    extract_trace_context,
    set_trace_context,
)
from bookshop.events import Queue, decode_event
from bookshop.models import OutboxEvent
from bookshop.services import OutboxService
from bookshop.workers import OutboxRelay

from support import FakeBroker, make_database, order_placed


class TestOutboxRelay(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = make_database(ServiceRole.ORDER)
        self.broker = FakeBroker()

    def tearDown(self) -> None:
        clear_trace_context()
        self.db.dispose()

    def stage(self, order_id: int) -> str:
        with self.db.transaction() as session:
            row = OutboxService.create_event(
                session, Queue.ORDER_PLACED, order_placed(order_id), partition_key=str(order_id)
            )
            return row.event_id

    def relay(self, **kwargs) -> OutboxRelay:
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("error_backoff", 0.01)
        return OutboxRelay(self.db, self.broker, **kwargs)

    def rows(self) -> list[OutboxEvent]:
        with self.db.session() as session:
            return list(session.exec(select(OutboxEvent)).all())

    async def test_publishes_pending_rows_oldest_first(self) -> None:
        self.stage(1)
        self.stage(2)

        published = await self.relay().publish_pending()

        self.assertEqual(published, 2)
        messages = self.broker.messages(Queue.ORDER_PLACED)
        self.assertEqual(
            [decode_event(Queue.ORDER_PLACED, m.body).order_id for m in messages], [1, 2]
        )
        self.assertEqual([m.key for m in messages], [b"1", b"2"])
        self.assertTrue(all(row.published for row in self.rows()))
        self.assertTrue(all(row.published_at is not None for row in self.rows()))

    async def test_published_rows_are_not_sent_again(self) -> None:
        self.stage(1)
        relay = self.relay()

        await relay.publish_pending()
        again = await relay.publish_pending()

        self.assertEqual(again, 0)
        self.assertEqual(len(self.broker.published), 1)

    async def test_trace_context_travels_in_headers(self) -> None:
        trace = create_trace_context()
        set_trace_context(trace)
        self.stage(1)
        clear_trace_context()

        await self.relay().publish_pending()

        [message] = self.broker.published
        self.assertEqual(extract_trace_context(message.headers).trace_id, trace.trace_id)

    async def test_row_without_trace_is_published_without_headers(self) -> None:
        self.stage(1)

        await self.relay().publish_pending()

        self.assertEqual(self.broker.published[0].headers, [])

    async def test_broker_outage_does_not_count_as_an_attempt(self) -> None:
        self.stage(1)
        self.broker.fail_publishes = 5
        relay = self.relay(max_attempts=2)

        for _ in range(5):
            self.assertEqual(await relay.publish_pending(), 0)
            self.assertFalse(relay.broker_available)

        [row] = self.rows()
        self.assertFalse(row.published)
        self.assertFalse(row.dead_lettered)
        self.assertEqual(row.attempts, 0)
        self.assertIsNone(row.last_error)

        self.assertEqual(await relay.publish_pending(), 1)
        self.assertTrue(relay.broker_available)
        [row] = self.rows()
        self.assertTrue(row.published)
        self.assertEqual(len(self.broker.published), 1)

    async def test_broker_outage_ends_the_pass(self) -> None:
        self.stage(1)
        self.stage(2)
        self.stage(3)
        self.broker.fail_publishes = 1
        relay = self.relay()

        self.assertEqual(await relay.publish_pending(), 0)
        self.assertEqual(self.broker.publish_attempts, 1)
        self.assertEqual(relay.update_pending_count(), 3)

        self.assertEqual(await relay.publish_pending(), 3)
        messages = self.broker.messages(Queue.ORDER_PLACED)
        self.assertEqual(
            [decode_event(Queue.ORDER_PLACED, m.body).order_id for m in messages], [1, 2, 3]
        )

    async def test_rejected_publish_is_retried(self) -> None:
        self.stage(1)
        self.broker.reject_publishes = 1
        relay = self.relay()

        self.assertEqual(await relay.publish_pending(), 0)
        self.assertTrue(relay.broker_available)
        [row] = self.rows()
        self.assertFalse(row.published)
        self.assertEqual(row.attempts, 1)
        self.assertIn("message too large", row.last_error)

        self.assertEqual(await relay.publish_pending(), 1)
        [row] = self.rows()
        self.assertTrue(row.published)

    async def test_rejection_does_not_hold_up_later_rows(self) -> None:
        self.stage(1)
        self.stage(2)
        self.broker.reject_publishes = 1

        self.assertEqual(await self.relay().publish_pending(), 1)

        [message] = self.broker.published
        self.assertEqual(decode_event(Queue.ORDER_PLACED, message.body).order_id, 2)

    async def test_row_is_parked_after_max_attempts(self) -> None:
        self.stage(1)
        self.broker.reject_publishes = 10
        relay = self.relay(max_attempts=2)

        await relay.publish_pending()
        await relay.publish_pending()
        await relay.publish_pending()

        [row] = self.rows()
        self.assertTrue(row.dead_lettered)
        self.assertFalse(row.published)
        self.assertEqual(row.attempts, 2)
        # The third pass no longer picked the row up
        self.assertEqual(self.broker.reject_publishes, 8)
        self.assertEqual(relay.update_pending_count(), 0)

    async def test_run_backs_off_while_broker_is_down(self) -> None:
        self.stage(1)
        self.broker.fail_publishes = 1
        relay = self.relay(poll_interval=0.01, error_backoff=0.2)

        task = asyncio.create_task(relay.run())
        await asyncio.sleep(0.1)
        # Still inside the backoff after the first failed pass
        self.assertEqual(self.broker.publish_attempts, 1)

        async def published():
            while not self.broker.published:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(published(), timeout=2.0)
        relay.stop()
        await asyncio.wait_for(task, timeout=2.0)

        [row] = self.rows()
        self.assertEqual(row.attempts, 0)

    async def test_pending_count(self) -> None:
        self.stage(1)
        self.stage(2)
        relay = self.relay()

        self.assertEqual(relay.update_pending_count(), 2)
        await relay.publish_pending()
        self.assertEqual(relay.update_pending_count(), 0)

    async def test_run_publishes_until_stopped(self) -> None:
        self.stage(1)
        relay = self.relay()

        task = asyncio.create_task(relay.run())

        async def published():
            while not self.broker.published:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(published(), timeout=2.0)
        relay.stop()
        await asyncio.wait_for(task, timeout=2.0)

        self.assertEqual(len(self.broker.published), 1)
