"""
Catalog service consumer: PaymentProcessed -> stock decrements
"""

from bookshop.core.db import Database
from bookshop.core.logging import get_logger
from bookshop.core.redis import ProcessedMessageCache
from bookshop.events import PaymentProcessed, Queue
from bookshop.services import StockService

logger = get_logger(__name__)


class PaymentProcessedConsumer:
    """Applies each order's stock decrements exactly once"""

    queue = Queue.PAYMENT_PROCESSED

    def __init__(self, db: Database, processed: ProcessedMessageCache | None = None):
        self.db = db
        self.processed = processed

    async def __call__(self, event: PaymentProcessed) -> str | None:
        if self.processed and await self.processed.seen(self.queue.value, event.dedup_key):
            logger.info("payment_processed_duplicate", order_id=event.order_id, source="cache")
            return "duplicate"

        with self.db.session() as session:
            result = StockService.apply_payment(session, event)

        if self.processed:
            await self.processed.mark(self.queue.value, event.dedup_key)

        if result is None:
            logger.info("payment_processed_duplicate", order_id=event.order_id, source="database")
            return "duplicate"
        return None
