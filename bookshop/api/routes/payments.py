from typing import Any

from fastapi import APIRouter

from bookshop.core.errors import NotFoundError
from bookshop.deps import SessionDep
from bookshop.models import PaymentPublic
from bookshop.services import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/{order_id}", response_model=PaymentPublic)
async def read_payment_for_order(session: SessionDep, order_id: int) -> Any:
    """Payment recorded for an order, once the payment service has seen it"""
    payment = PaymentService.get_payment_for_order(session, order_id)
    if payment is None:
        raise NotFoundError(f"No payment recorded for order {order_id}.")
    return PaymentPublic.model_validate(payment)
