"""
Message schemas and the queue registry
Centralized contract definitions using Pydantic for type safety
"""

from bookshop.events.base import BaseEventData
from bookshop.events.order_events import OrderLineItem, OrderPlaced
from bookshop.events.payment_events import PaymentProcessed
from bookshop.events.queues import (
    QUEUE_CONTRACTS,
    Queue,
    decode_event,
    encode_event,
)

__all__ = [
    # Base
    "BaseEventData",
    # Contracts
    "OrderLineItem",
    "OrderPlaced",
    "PaymentProcessed",
    # Registry
    "QUEUE_CONTRACTS",
    "Queue",
    "decode_event",
    "encode_event",
]
