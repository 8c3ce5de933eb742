"""
Payment recording in response to OrderPlaced
"""

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from bookshop.core.errors import PersistenceError
from bookshop.core.logging import get_logger
from bookshop.core.metrics import payments_recorded_total
from bookshop.events import OrderPlaced, PaymentProcessed, Queue
from bookshop.models import Payment, PaymentMethod, PaymentStatus, get_datetime_utc
from bookshop.services.outbox_service import OutboxService

logger = get_logger(__name__)


class PaymentService:
    """Create-or-ignore payments keyed by order id"""

    @staticmethod
    def get_payment_for_order(session: Session, order_id: int) -> Payment | None:
        return session.exec(select(Payment).where(Payment.order_id == order_id)).first()

    @staticmethod
    def record_payment(
        session: Session,
        event: OrderPlaced,
        method: PaymentMethod = PaymentMethod.PAYPAL,
    ) -> tuple[Payment, bool]:
        """
        Record the payment for ``event`` and stage PaymentProcessed.

        No payment gateway is involved: every payment is recorded as
        Completed. The payment row and the PaymentProcessed outbox row commit
        in one transaction.

        Returns:
            (payment, created). ``created`` is False when the order already
            had a payment, in which case nothing was written.

        Raises:
            PersistenceError: the store failed for any other reason
        """
        try:
            existing = PaymentService.get_payment_for_order(session, event.order_id)
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Payment could not be looked up.") from e
        if existing:
            return existing, False

        payment = Payment(
            order_id=event.order_id,
            user_id=event.customer_id,
            amount=event.total_price,
            status=PaymentStatus.COMPLETED.value,
            method=method.value,
        )
        session.add(payment)

        OutboxService.create_event(
            session=session,
            queue=Queue.PAYMENT_PROCESSED,
            event_data=PaymentProcessed(
                order_id=event.order_id,
                items=event.items,
                processed_at_utc=get_datetime_utc(),
            ),
            partition_key=str(event.order_id),
        )

        try:
            session.commit()
        except IntegrityError as e:
            # Another delivery of the same order committed first
            session.rollback()
            existing = PaymentService.get_payment_for_order(session, event.order_id)
            if existing:
                return existing, False
            raise PersistenceError("Payment could not be stored.") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Payment could not be stored.") from e

        session.refresh(payment)
        payments_recorded_total.labels(method=payment.method).inc()
        logger.info(
            "payment_recorded",
            payment_id=payment.id,
            order_id=payment.order_id,
            amount=str(payment.amount),
            status=payment.status,
            method=payment.method,
        )
        return payment, True
