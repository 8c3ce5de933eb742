"""
Base schema for broker messages

Messages are flat, versionless JSON records with camelCase field names. A
message missing a field (or carrying one of the wrong type) is rejected as a
whole; unknown fields are ignored so producers can add fields first.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


def as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Written as a JSON number, read from a number or a numeric string. Bounded
# to what NUMERIC(12,2) stores, which a float also carries exactly.
Money = Annotated[
    Decimal,
    Field(ge=0, max_digits=12, decimal_places=2),
    PlainSerializer(float, return_type=float, when_used="json"),
]

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class BaseEventData(BaseModel):
    """Base class for all message payloads"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    order_id: int

    @property
    def dedup_key(self) -> str:
        """Key that identifies repeated deliveries of the same fact"""
        return str(self.order_id)
