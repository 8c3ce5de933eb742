"""
Order event schemas
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bookshop.events.base import BaseEventData, Money, UtcDatetime


class OrderLineItem(BaseModel):
    """One ordered book, carried unchanged through every hop"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    book_id: int
    quantity: int = Field(gt=0)
    unit_price: Money


class OrderPlaced(BaseEventData):
    """Published by the order service once the order row is committed"""

    customer_id: int
    total_price: Money
    items: list[OrderLineItem] = Field(min_length=1)
    created_at_utc: UtcDatetime
