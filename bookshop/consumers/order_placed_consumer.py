"""
Payment service consumer: OrderPlaced -> Payment + PaymentProcessed
"""

from bookshop.core.db import Database
from bookshop.core.logging import get_logger
from bookshop.core.redis import ProcessedMessageCache
from bookshop.events import OrderPlaced, Queue
from bookshop.models import PaymentMethod
from bookshop.services import PaymentService

logger = get_logger(__name__)


class OrderPlacedConsumer:
    """
    Records exactly one payment per order.

    Redeliveries are expected (the host only acknowledges after this returns)
    and are recognised by order id: first via the processed-message cache,
    then by the unique order_id on payments.
    """

    queue = Queue.ORDER_PLACED

    def __init__(
        self,
        db: Database,
        processed: ProcessedMessageCache | None = None,
        method: PaymentMethod = PaymentMethod.PAYPAL,
    ):
        self.db = db
        self.processed = processed
        self.method = method

    async def __call__(self, event: OrderPlaced) -> str | None:
        if self.processed and await self.processed.seen(self.queue.value, event.dedup_key):
            logger.info("order_placed_duplicate", order_id=event.order_id, source="cache")
            return "duplicate"

        with self.db.session() as session:
            payment, created = PaymentService.record_payment(session, event, self.method)
            payment_id = payment.id

        if self.processed:
            await self.processed.mark(self.queue.value, event.dedup_key)

        if not created:
            logger.info(
                "order_placed_duplicate",
                order_id=event.order_id,
                payment_id=payment_id,
                source="database",
            )
            return "duplicate"
        return None
