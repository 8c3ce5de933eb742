"""
Payment event schemas
"""

from pydantic import Field

from bookshop.events.base import BaseEventData, UtcDatetime
from bookshop.events.order_events import OrderLineItem


class PaymentProcessed(BaseEventData):
    """Published by the payment service once the payment row is committed"""

    items: list[OrderLineItem] = Field(min_length=1)
    processed_at_utc: UtcDatetime
