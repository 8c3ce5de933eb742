"""
Order placement: validate against the catalog, commit the order, stage OrderPlaced
"""

from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from bookshop.core.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from bookshop.core.logging import get_logger
from bookshop.core.metrics import order_rejections_total, orders_placed_total
from bookshop.events import OrderLineItem, OrderPlaced, Queue
from bookshop.models import Order, OrderLine, OrderStatus
from bookshop.services.outbox_service import OutboxService

logger = get_logger(__name__)


class BookLookup(Protocol):
    """Read-only catalog interface the order service validates against"""

    async def get_book(self, book_id: int): ...


class OrderService:
    """Order creation"""

    @staticmethod
    async def place_order(
        session: Session,
        catalog: BookLookup,
        customer_id: int,
        book_id: int,
        quantity: int,
    ) -> Order:
        """
        Place a single-book order.

        The total is computed here from the catalog price; nothing the client
        sends about prices is trusted. The order row and its OrderPlaced
        outbox row commit together, so the event always carries the final
        order id and is never published for an order that does not exist.

        Raises:
            ValidationError: quantity is not positive
            NotFoundError: the book does not exist
            ConflictError: the book has less stock than requested
            ServiceUnavailableError: the catalog could not be reached
            PersistenceError: the order could not be stored
        """
        log = logger.bind(customer_id=customer_id, book_id=book_id, quantity=quantity)

        if quantity <= 0:
            order_rejections_total.labels(reason="validation").inc()
            log.warning("order_rejected", reason="non_positive_quantity")
            raise ValidationError("Quantity must be greater than zero.")

        book = await catalog.get_book(book_id)
        if book is None:
            order_rejections_total.labels(reason="not_found").inc()
            log.warning("order_rejected", reason="book_not_found")
            raise NotFoundError(f"Book {book_id} not found.")

        if quantity > book.stock:
            order_rejections_total.labels(reason="conflict").inc()
            log.warning("order_rejected", reason="insufficient_stock", available=book.stock)
            raise ConflictError(
                f"Insufficient stock. Requested {quantity}, available {book.stock}.",
                requested=quantity,
                available=book.stock,
            )

        total_price = book.price * quantity

        order = Order(
            customer_id=customer_id,
            total_price=total_price,
            status=OrderStatus.PENDING.value,
        )
        order.lines = [OrderLine(book_id=book_id, quantity=quantity, unit_price=book.price)]

        try:
            session.add(order)
            # Flush to get the store-assigned id before building the event
            session.flush()

            event_data = OrderPlaced(
                order_id=order.id,
                customer_id=order.customer_id,
                total_price=total_price,
                items=[
                    OrderLineItem(book_id=line.book_id, quantity=line.quantity, unit_price=line.unit_price)
                    for line in order.lines
                ],
                created_at_utc=order.created_at,
            )
            OutboxService.create_event(
                session=session,
                queue=Queue.ORDER_PLACED,
                event_data=event_data,
                partition_key=str(order.id),
            )

            session.commit()
            session.refresh(order)
        except SQLAlchemyError as e:
            session.rollback()
            log.error(
                "order_persist_failed",
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            raise PersistenceError("Order could not be stored.") from e

        orders_placed_total.inc()
        log.info(
            "order_placed",
            order_id=order.id,
            total_price=str(order.total_price),
            status=order.status,
        )

        return order
