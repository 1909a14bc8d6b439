"""
Order data models for Orders Service.
"""

from datetime import datetime, timezone
from typing import Annotated, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Signed 64-bit, matching the BIGINT columns
BigInt = Annotated[int, Field(ge=-2**63, le=2**63 - 1)]


class _Frozen(BaseModel):
    """Immutable record; unknown JSON fields are ignored."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("*")
    @classmethod
    def reject_nul(cls, value):
        # PostgreSQL text cannot store NUL
        if isinstance(value, str) and "\x00" in value:
            raise ValueError("NUL character not allowed")
        return value


class Delivery(_Frozen):
    """Delivery contact and address."""
    name: str = ""
    phone: str = ""
    zip: str = ""
    city: str = ""
    address: str = ""
    region: str = ""
    email: str = ""


class Payment(_Frozen):
    """Payment transaction details."""
    transaction: str = ""
    request_id: str = ""
    currency: str = ""
    provider: str = ""
    amount: BigInt = 0
    payment_dt: BigInt = 0
    bank: str = ""
    delivery_cost: BigInt = 0
    goods_total: BigInt = 0
    custom_fee: BigInt = 0


class Item(_Frozen):
    """Single order line."""
    chrt_id: BigInt = 0
    track_number: str = ""
    price: BigInt = 0
    rid: str = ""
    name: str = ""
    sale: BigInt = 0
    size: str = ""
    total_price: BigInt = 0
    nm_id: BigInt = 0
    brand: str = ""
    status: BigInt = 0


class Order(_Frozen):
    """Order aggregate, keyed by order_uid."""
    order_uid: str = Field(default="", description="Primary key")
    track_number: str = ""
    entry: str = ""
    delivery: Delivery = Field(default_factory=Delivery)
    payment: Payment = Field(default_factory=Payment)
    items: Tuple[Item, ...] = ()
    locale: str = ""
    internal_signature: str = ""
    customer_id: str = ""
    delivery_service: str = ""
    shardkey: str = ""
    sm_id: BigInt = 0
    date_created: datetime = EPOCH
    oof_shard: str = ""

    @classmethod
    def from_json(cls, payload: bytes) -> "Order":
        """Decode a broker payload; raises pydantic.ValidationError on bad input."""
        return cls.model_validate_json(payload)

    def to_json(self) -> bytes:
        return self.model_dump_json().encode("utf-8")
