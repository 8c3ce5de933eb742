from typing import Any

from fastapi import APIRouter, status
from sqlalchemy.orm import selectinload
from sqlmodel import select

from bookshop.core.errors import NotFoundError
from bookshop.core.logging import get_logger
from bookshop.deps import CatalogDep, SessionDep
from bookshop.models import Order, OrderCreate, OrderPublic
from bookshop.services import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])
logger = get_logger(__name__)


@router.post("", response_model=OrderPublic, status_code=status.HTTP_201_CREATED)
async def place_order(*, session: SessionDep, catalog: CatalogDep, order_in: OrderCreate) -> Any:
    """
    Place an order for one book.

    The response means the order was accepted (Pending); payment and the
    stock update happen asynchronously.
    """
    logger.info(
        "order_placement_started",
        customer_id=order_in.customer_id,
        book_id=order_in.book_id,
        quantity=order_in.quantity,
    )

    order = await OrderService.place_order(
        session,
        catalog,
        customer_id=order_in.customer_id,
        book_id=order_in.book_id,
        quantity=order_in.quantity,
    )
    return OrderPublic.model_validate(order)


@router.get("/{order_id}", response_model=OrderPublic)
async def read_order(session: SessionDep, order_id: int) -> Any:
    statement = (
        select(Order)
        .where(Order.id == order_id)
        .options(selectinload(Order.lines))  # type: ignore[arg-type]
    )
    order = session.exec(statement).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found.")
    return OrderPublic.model_validate(order)
