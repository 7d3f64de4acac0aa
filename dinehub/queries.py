"""
Revenue queries (read side)

Pure computations over the mirrored orders and bookings. Nothing is cached;
callers memoize if they want to.

An entity counts toward a window when its createdAt lies in [start, end].
Entities without createdAt are excluded from every window. Orders contribute
their total, bookings their amount (the advance paid, not a meal value).
Sums use math.fsum, so the result does not depend on input order.
"""

import math
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from typing import Iterable, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .aggregate import BOOKING_TRANSITIONS, ORDER_TRANSITIONS
from .models import Booking, Order, Restaurant, now_local

Window = Literal[
    "today", "yesterday", "week", "last_week", "month", "last_month", "year", "last_year"
]

PREVIOUS_WINDOW: dict[str, str] = {
    "today": "yesterday",
    "week": "last_week",
    "month": "last_month",
    "year": "last_year",
}

_EPS = timedelta(microseconds=1)


class _Result(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RevenueWindowResult(_Result):
    window: str
    start: datetime
    end: datetime
    total: float = 0
    orders_subtotal: float = 0
    bookings_subtotal: float = 0
    order_count: int = 0
    booking_count: int = 0


class RevenueTrend(_Result):
    current: RevenueWindowResult
    previous: RevenueWindowResult
    percent_change: float | None
    has_baseline: bool


class RestaurantRevenue(_Result):
    restaurant_id: str
    name: str
    is_open: bool
    revenue: RevenueWindowResult


class DailyRevenue(_Result):
    day: date
    total: float
    order_count: int
    booking_count: int


# ── windows ───────────────────────────────────────


def _midnight(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def window_bounds(window: str, now: datetime) -> tuple[datetime, datetime]:
    """
    Inclusive [start, end] of a calendar window relative to ``now``.

    Current periods end at ``now``; previous periods end one microsecond
    before the current period starts. Weeks start on Sunday.
    """
    midnight = _midnight(now)
    if window == "today":
        return midnight, now
    if window == "yesterday":
        return midnight - timedelta(days=1), midnight - _EPS
    if window == "week":
        return midnight - timedelta(days=(now.weekday() + 1) % 7), now
    if window == "last_week":
        start, _ = window_bounds("week", now)
        return start - timedelta(days=7), start - _EPS
    if window == "month":
        return midnight.replace(day=1), now
    if window == "last_month":
        first = midnight.replace(day=1)
        return (first - timedelta(days=1)).replace(day=1), first - _EPS
    if window == "year":
        return midnight.replace(month=1, day=1), now
    if window == "last_year":
        first = midnight.replace(month=1, day=1)
        return first.replace(year=first.year - 1), first - _EPS
    raise ValueError(f"unknown window: {window!r}")


def _qualifies(entity, start: datetime, end: datetime, restaurant_id: str | None) -> bool:
    if entity.created_at is None:
        return False
    if restaurant_id is not None and entity.restaurant_id != restaurant_id:
        return False
    return start <= entity.created_at <= end


def _result(window: str, start: datetime, end: datetime, orders: list, bookings: list) -> RevenueWindowResult:
    orders_subtotal = math.fsum(o.total for o in orders)
    bookings_subtotal = math.fsum(b.amount for b in bookings)
    return RevenueWindowResult(
        window=window,
        start=start,
        end=end,
        total=math.fsum([orders_subtotal, bookings_subtotal]),
        orders_subtotal=orders_subtotal,
        bookings_subtotal=bookings_subtotal,
        order_count=len(orders),
        booking_count=len(bookings),
    )


# ── public queries ────────────────────────────────


def aggregate(
    orders: Iterable[Order],
    bookings: Iterable[Booking],
    window: str,
    restaurant_id: str | None = None,
    now: datetime | None = None,
) -> RevenueWindowResult:
    """Totals and counts for one window, optionally for one restaurant."""
    start, end = window_bounds(window, now or now_local())
    return _result(
        window,
        start,
        end,
        [o for o in orders if _qualifies(o, start, end, restaurant_id)],
        [b for b in bookings if _qualifies(b, start, end, restaurant_id)],
    )


def percent_change(current: float, previous: float) -> float | None:
    """Period-over-period change in percent; None means there is no baseline."""
    if previous == 0:
        return None
    return (current - previous) / previous * 100


def compare(
    orders: Iterable[Order],
    bookings: Iterable[Booking],
    window: str,
    restaurant_id: str | None = None,
    now: datetime | None = None,
) -> RevenueTrend:
    """Current window against the same-length previous period."""
    if window not in PREVIOUS_WINDOW:
        raise ValueError(f"no previous period for window {window!r}")
    now = now or now_local()
    orders, bookings = list(orders), list(bookings)
    current = aggregate(orders, bookings, window, restaurant_id, now)
    previous = aggregate(orders, bookings, PREVIOUS_WINDOW[window], restaurant_id, now)
    change = percent_change(current.total, previous.total)
    return RevenueTrend(
        current=current,
        previous=previous,
        percent_change=change,
        has_baseline=change is not None,
    )


def revenue_by_restaurant(
    orders: Iterable[Order],
    bookings: Iterable[Booking],
    restaurants: Iterable[Restaurant],
    window: str,
    now: datetime | None = None,
) -> list[RestaurantRevenue]:
    """Per-restaurant breakdown, highest total first."""
    start, end = window_bounds(window, now or now_local())
    orders_by = defaultdict(list)
    bookings_by = defaultdict(list)
    for o in orders:
        if _qualifies(o, start, end, None):
            orders_by[o.restaurant_id].append(o)
    for b in bookings:
        if _qualifies(b, start, end, None):
            bookings_by[b.restaurant_id].append(b)

    rows = [
        RestaurantRevenue(
            restaurant_id=r.id,
            name=r.name,
            is_open=r.is_open,
            revenue=_result(window, start, end, orders_by[r.id], bookings_by[r.id]),
        )
        for r in restaurants
    ]
    rows.sort(key=lambda row: (-row.revenue.total, row.name))
    return rows


def daily_revenue(
    orders: Iterable[Order],
    bookings: Iterable[Booking],
    days: int = 30,
    restaurant_id: str | None = None,
    now: datetime | None = None,
) -> list[DailyRevenue]:
    """One row per calendar day for the last ``days`` days, newest first."""
    now = now or now_local()
    today = _midnight(now)
    start = today - timedelta(days=days - 1)
    orders_by = defaultdict(list)
    bookings_by = defaultdict(list)
    for o in orders:
        if _qualifies(o, start, now, restaurant_id):
            orders_by[o.created_at.astimezone(now.tzinfo).date()].append(o.total)
    for b in bookings:
        if _qualifies(b, start, now, restaurant_id):
            bookings_by[b.created_at.astimezone(now.tzinfo).date()].append(b.amount)

    rows = []
    for offset in range(days):
        day = (today - timedelta(days=offset)).date()
        rows.append(
            DailyRevenue(
                day=day,
                total=math.fsum(orders_by[day] + bookings_by[day]),
                order_count=len(orders_by[day]),
                booking_count=len(bookings_by[day]),
            )
        )
    return rows


def status_counts(
    orders: Iterable[Order],
    bookings: Iterable[Booking],
    restaurant_id: str | None = None,
) -> dict[str, dict[str, int]]:
    """Number of orders and bookings per status, every status listed."""
    order_counts = Counter(
        o.status for o in orders if restaurant_id is None or o.restaurant_id == restaurant_id
    )
    booking_counts = Counter(
        b.status for b in bookings if restaurant_id is None or b.restaurant_id == restaurant_id
    )
    return {
        "orders": {status: order_counts[status] for status in ORDER_TRANSITIONS},
        "bookings": {status: booking_counts[status] for status in BOOKING_TRANSITIONS},
    }


def overview(
    orders: Iterable[Order],
    bookings: Iterable[Booking],
    restaurants: Iterable[Restaurant],
    restaurant_id: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Dashboard summary in one response."""
    now = now or now_local()
    orders, bookings = list(orders), list(bookings)
    restaurants = [r for r in restaurants if restaurant_id is None or r.id == restaurant_id]
    return {
        "summary": {
            window: aggregate(orders, bookings, window, restaurant_id, now)
            for window in ("today", "month", "year")
        },
        "week_trend": compare(orders, bookings, "week", restaurant_id, now),
        "status_counts": status_counts(orders, bookings, restaurant_id),
        "top_restaurants": revenue_by_restaurant(orders, bookings, restaurants, "month", now)[:5],
        "recent_daily": daily_revenue(orders, bookings, 7, restaurant_id, now),
    }
