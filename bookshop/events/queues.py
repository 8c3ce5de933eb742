"""
Queue registry: the wire names every service must agree on, each bound to the
payload schema it carries.

Producers and consumers only refer to ``Queue`` members, never to the raw
strings, so a queue can't be published with the wrong payload type.
"""

from enum import Enum

from pydantic import ValidationError as PydanticValidationError

from bookshop.core.errors import DeserializationError
from bookshop.events.base import BaseEventData
from bookshop.events.order_events import OrderPlaced
from bookshop.events.payment_events import PaymentProcessed

DEAD_LETTER_SUFFIX = ".dead-letter"


class Queue(str, Enum):
    ORDER_PLACED = "OrderQueue"  # order service -> payment service
    PAYMENT_PROCESSED = "EditBookCount"  # payment service -> catalog service

    @property
    def contract(self) -> type[BaseEventData]:
        return QUEUE_CONTRACTS[self]

    @property
    def dead_letter(self) -> str:
        return f"{self.value}{DEAD_LETTER_SUFFIX}"


QUEUE_CONTRACTS: dict[Queue, type[BaseEventData]] = {
    Queue.ORDER_PLACED: OrderPlaced,
    Queue.PAYMENT_PROCESSED: PaymentProcessed,
}


def encode_event(queue: Queue, event: BaseEventData) -> bytes:
    """Serialize ``event`` for ``queue`` as UTF-8 JSON"""
    if not isinstance(event, queue.contract):
        raise TypeError(
            f"{queue.value} carries {queue.contract.__name__}, "
            f"got {type(event).__name__}"
        )
    return event.model_dump_json(by_alias=True).encode("utf-8")


def decode_event(queue: Queue, body: bytes | str) -> BaseEventData:
    """
    Parse a message body received on ``queue``.

    Raises:
        DeserializationError: body is not valid JSON for the queue's schema
    """
    try:
        return queue.contract.model_validate_json(body)
    except PydanticValidationError as e:
        raise DeserializationError(
            f"Invalid {queue.contract.__name__} message on {queue.value}",
            queue=queue.value,
            errors=e.error_count(),
            detail=str(e),
        ) from e
