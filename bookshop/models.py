import uuid
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, Text
from sqlmodel import Field, SQLModel, Column, String, Relationship

from bookshop.core.config import ServiceRole


def get_datetime_utc() -> datetime:
    return datetime.now(timezone.utc)


# ORDER SERVICE


class OrderStatus(str, Enum):
    """Order lifecycle states"""

    # The choreography never moves an order out of Pending: "accepted" is
    # what the order service can promise, not "paid" or "shipped".
    PENDING = "Pending"


class OrderLineBase(SQLModel):
    book_id: int
    quantity: int
    unit_price: Decimal = Field(max_digits=12, decimal_places=2)


class OrderCreate(SQLModel):
    """Schema for placing an order"""

    customer_id: int
    book_id: int
    quantity: int


class Order(SQLModel, table=True):
    """Order database model"""

    __tablename__ = "orders"

    id: int | None = Field(default=None, primary_key=True)
    customer_id: int = Field(index=True)
    total_price: Decimal = Field(max_digits=12, decimal_places=2)
    status: str = Field(
        default=OrderStatus.PENDING.value,
        sa_column=Column(String, nullable=False, index=True),
    )
    created_at: datetime = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),
    )

    lines: list["OrderLine"] = Relationship(back_populates="order")


class OrderLine(OrderLineBase, table=True):
    """Order line database model"""

    __tablename__ = "order_lines"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", nullable=False, index=True)
    order: Order | None = Relationship(back_populates="lines")


class OrderLinePublic(OrderLineBase):
    pass


class OrderPublic(SQLModel):
    """Public order schema"""

    id: int
    customer_id: int
    total_price: Decimal
    status: str
    created_at: datetime
    lines: list[OrderLinePublic] = []


# PAYMENT SERVICE


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    WALLET = "wallet"


class Payment(SQLModel, table=True):
    """Payment database model"""

    __tablename__ = "payments"

    id: int | None = Field(default=None, primary_key=True)
    # One payment per order; redelivered OrderPlaced messages hit this
    order_id: int = Field(unique=True, index=True)
    user_id: int = Field(index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    status: str = Field(default=PaymentStatus.COMPLETED.value)
    method: str = Field(default=PaymentMethod.PAYPAL.value)
    created_at: datetime = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),
    )


class PaymentPublic(SQLModel):
    id: int
    order_id: int
    user_id: int
    amount: Decimal
    status: str
    method: str
    created_at: datetime


# CATALOG SERVICE


class Book(SQLModel, table=True):
    """Stock projection of a catalog book"""

    __tablename__ = "books"

    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(default="")
    author: str = Field(default="")
    price: Decimal = Field(max_digits=12, decimal_places=2)
    # May go negative; oversell is flagged in logs, not prevented
    stock: int = Field(default=0)


class BookPublic(SQLModel):
    """What the catalog read lookup returns"""

    id: int
    title: str
    author: str
    price: Decimal
    stock: int


class AppliedStockUpdate(SQLModel, table=True):
    """One row per order whose PaymentProcessed has been applied to stock"""

    __tablename__ = "applied_stock_updates"

    order_id: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    items_applied: int = Field(default=0)
    items_skipped: int = Field(default=0)
    applied_at: datetime = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),
    )


# OUTBOX PATTERN


class OutboxEvent(SQLModel, table=True):
    """
    Outbox table for transactional event publishing
    Events are written here atomically with DB changes, then published by the relay
    """

    __tablename__ = "outbox_events"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    event_id: str = Field(index=True, unique=True)
    event_type: str = Field(index=True)
    queue: str = Field(index=True)
    partition_key: str | None = Field(default=None)
    payload: str = Field(sa_column=Column(Text, nullable=False))  # encoded message body

    # Trace context captured when the event was written
    trace_id: str | None = Field(default=None)
    span_id: str | None = Field(default=None)

    # Status tracking
    published: bool = Field(default=False, index=True)
    published_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    attempts: int = Field(default=0)
    last_error: str | None = Field(default=None)
    dead_lettered: bool = Field(default=False, index=True)

    # Timestamps
    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )


SERVICE_TABLES = {
    ServiceRole.ORDER: [Order.__table__, OrderLine.__table__, OutboxEvent.__table__],
    ServiceRole.PAYMENT: [Payment.__table__, OutboxEvent.__table__],
    ServiceRole.CATALOG: [Book.__table__, AppliedStockUpdate.__table__],
}
