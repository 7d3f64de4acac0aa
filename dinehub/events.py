"""
Status events

Facts appended to the status history, named in the past tense and never
mutated. Replaying them in version order yields the full status timeline.
"""

from datetime import datetime

from pydantic import BaseModel


class OrderPlaced(BaseModel):
    """An order was created in the pending state"""
    order_id: str
    restaurant_id: str
    total: float
    status: str
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """An order moved to a new status"""
    order_id: str
    status: str
    previous_status: str
    timestamp: datetime


class BookingCreated(BaseModel):
    """A booking was recorded after payment completed upstream"""
    booking_id: str
    restaurant_id: str
    amount: float
    status: str
    timestamp: datetime


class BookingStatusChanged(BaseModel):
    """A booking moved to a new status"""
    booking_id: str
    status: str
    previous_status: str
    timestamp: datetime
