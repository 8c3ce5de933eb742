"""
Stock decrements in response to PaymentProcessed
"""

from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from bookshop.core.errors import PersistenceError
from bookshop.core.logging import get_logger
from bookshop.core.metrics import stock_items_skipped_total, stock_updates_applied_total
from bookshop.events import PaymentProcessed
from bookshop.models import AppliedStockUpdate, Book

logger = get_logger(__name__)


@dataclass
class StockUpdateResult:
    order_id: int
    items_applied: int
    items_skipped: int


class StockService:
    """Apply one PaymentProcessed event to the stock projection, once"""

    @staticmethod
    def apply_payment(session: Session, event: PaymentProcessed) -> StockUpdateResult | None:
        """
        Decrement stock for every line item of ``event`` in one transaction.

        Items whose book does not exist are skipped; the rest still apply.
        Stock is allowed to go below zero and is logged when it does.
        The applied_stock_updates row for the order commits with the
        decrements, so a redelivered event changes nothing.

        Returns:
            The result, or None if the order was already applied.

        Raises:
            PersistenceError: the store failed
        """
        try:
            if session.get(AppliedStockUpdate, event.order_id) is not None:
                return None

            applied = 0
            skipped = 0
            connection = session.connection()
            for item in event.items:
                # Single-statement decrement, safe against concurrent consumers
                result = connection.execute(
                    update(Book)
                    .where(Book.id == item.book_id)
                    .values(stock=Book.stock - item.quantity)
                )
                if result.rowcount == 0:
                    skipped += 1
                    stock_items_skipped_total.inc()
                    logger.info(
                        "stock_item_skipped",
                        order_id=event.order_id,
                        book_id=item.book_id,
                        reason="book_not_found",
                    )
                    continue

                applied += 1
                stock = session.exec(select(Book.stock).where(Book.id == item.book_id)).one()
                if stock < 0:
                    logger.warning(
                        "stock_below_zero",
                        order_id=event.order_id,
                        book_id=item.book_id,
                        stock=stock,
                    )

            session.add(
                AppliedStockUpdate(
                    order_id=event.order_id,
                    items_applied=applied,
                    items_skipped=skipped,
                )
            )
            session.commit()
        except IntegrityError:
            # Another delivery of the same order committed first
            session.rollback()
            return None
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Stock update could not be stored.") from e

        stock_updates_applied_total.inc()
        logger.info(
            "stock_updated",
            order_id=event.order_id,
            items_applied=applied,
            items_skipped=skipped,
        )
        return StockUpdateResult(order_id=event.order_id, items_applied=applied, items_skipped=skipped)
