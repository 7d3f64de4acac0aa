"""
Entity models

Documents live in the store with camelCase keys (userId, restaurantId,
createdAt, ...). The models accept both spellings and dump by alias so a
record read from the store round-trips unchanged.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

OrderStatus = Literal[
    "pending", "confirmed", "preparing", "ready", "delivered", "completed", "cancelled"
]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
PaymentMethod = Literal["wallet", "netbanking", "card", "upi", "cod"]


def now_local() -> datetime:
    return datetime.now().astimezone()


def coerce_timestamp(value: Any, default: datetime | None = None) -> datetime | None:
    """
    Convert a provider-native time value to an aware datetime.

    Accepts datetimes, epoch seconds or milliseconds, ISO-8601 strings and
    provider timestamp objects exposing ``to_datetime()`` or ``toDate()``.
    Naive values are read as local time. ``None`` yields ``default``.
    """
    if value is None or value == "":
        return default
    if hasattr(value, "to_datetime"):
        value = value.to_datetime()
    elif hasattr(value, "toDate"):
        value = value.toDate()
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        # anything past year 33658 in seconds is really milliseconds
        seconds = value / 1000 if abs(value) > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).astimezone()
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise ValueError(f"not a timestamp: {value!r}")
    return value.astimezone()


class Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_record(self) -> dict:
        """Dump for the store: camelCase keys, id excluded."""
        return self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)


class LineItem(Document):
    name: str
    price: float
    quantity: int = 1


class _Tracked(Document):
    """Fields shared by every entity whose status goes through the validator."""

    id: str = ""
    user_id: str = ""
    restaurant_id: str
    status: str = "pending"
    previous_status: str | None = None
    status_updated_at: datetime | None = None
    created_at: datetime | None = None
    payment_method: PaymentMethod | None = None
    payment_id: str | None = None

    @field_validator("created_at", "status_updated_at", mode="before")
    @classmethod
    def _coerce_time(cls, value: Any) -> datetime | None:
        # createdAt stays unknown when absent so revenue windows can exclude it
        return coerce_timestamp(value)

    @model_validator(mode="after")
    def _stamp_transition(self):
        if self.previous_status is not None and self.status_updated_at is None:
            self.status_updated_at = now_local()
        return self


class Order(_Tracked):
    items: list[LineItem]
    type: Literal["delivery", "pickup"] = "delivery"
    total: float
    customer_name: str = ""
    customer_phone: str = ""
    address: str | None = None
    status: OrderStatus = "pending"
    previous_status: OrderStatus | None = None


class Booking(_Tracked):
    type: Literal["table", "event"] = "table"
    date: str
    time: str
    customers: int = 1
    customer_names: list[str] = []
    phone: str
    amount: float = 0
    payment_status: Literal["pending", "paid"] = "pending"
    special_requests: str | None = None
    occasion: str | None = None
    selected_items: dict[str, int] | None = None
    food_options: str | None = None
    place_for_event: str | None = None
    description: str | None = None
    status: BookingStatus = "pending"
    previous_status: BookingStatus | None = None


class Restaurant(Document):
    id: str = ""
    name: str
    is_open: bool = True
    price: float = 0
    type: str | None = None
    address: str | None = None


# ── Creation drafts ──────────────────────────────


class Draft(Document):
    # status and audit fields are never taken from the caller
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class OrderDraft(Draft):
    user_id: str = ""
    restaurant_id: str
    items: list[LineItem] = []
    type: Literal["delivery", "pickup"] = "delivery"
    total: float = 0
    customer_name: str = ""
    customer_phone: str = ""
    address: str | None = None
    payment_method: PaymentMethod | None = None
    payment_id: str | None = None


class BookingDraft(Draft):
    user_id: str = ""
    restaurant_id: str
    type: Literal["table", "event"] = "table"
    date: str = ""
    time: str = ""
    customers: int = 1
    customer_names: list[str] = []
    phone: str = ""
    amount: float = 0
    payment_status: Literal["pending", "paid"] = "pending"
    special_requests: str | None = None
    occasion: str | None = None
    selected_items: dict[str, int] | None = None
    food_options: str | None = None
    place_for_event: str | None = None
    description: str | None = None
    payment_method: PaymentMethod | None = None
    payment_id: str | None = None


class StatusChange(BaseModel):
    status: str
    timestamp: datetime
