"""
Lifecycle commands (write side)

Creation and status transitions for orders and bookings. The current status
is always read from the mirror, checked against the transition table, then
written to the store together with the audit stamp
{status, previousStatus, statusUpdatedAt}. Each committed change is also
appended to the status event history when one is configured.

There is no rollback: a store write that succeeded stays committed even if a
later step fails, and callers re-derive truth from the mirror.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import event_store
from .aggregate import BOOKING_TRANSITIONS, ORDER_TRANSITIONS, StatusTimeline, is_allowed
from .errors import (
    ConcurrentAppend,
    EntityNotFound,
    IllegalTransition,
    NotFound,
    ValidationFailed,
)
from .events import BookingCreated, BookingStatusChanged, OrderPlaced, OrderStatusChanged
from .models import Booking, BookingDraft, Order, OrderDraft, StatusChange, now_local
from .store import EntityStore
from .subscriber import EntityMirror

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Kind:
    name: str
    collection: str
    aggregate_type: str
    table: dict[str, frozenset[str]]
    changed_event: type[BaseModel]
    id_field: str


ORDER = _Kind("order", "orders", "Order", ORDER_TRANSITIONS, OrderStatusChanged, "order_id")
BOOKING = _Kind("booking", "bookings", "Booking", BOOKING_TRANSITIONS, BookingStatusChanged, "booking_id")


def _parse(model: type[BaseModel], draft, entity: str):
    if isinstance(draft, model):
        return draft
    try:
        return model.model_validate(draft)
    except ValidationError as e:
        raise ValidationFailed(
            entity, [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
        ) from e


class LifecycleManager:
    def __init__(
        self,
        store: EntityStore,
        mirror: EntityMirror,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = now_local,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.session_factory = session_factory
        self.clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ── creation ──────────────────────────────────

    async def create_order(self, draft: OrderDraft | dict) -> Order:
        """
        Validate and store a new order in the pending state.

        The payment outcome (paymentMethod/paymentId) must already be settled
        upstream; nothing here debits or refunds.
        """
        draft = _parse(OrderDraft, draft, "order")
        errors = []
        if not draft.items:
            errors.append("items must not be empty")
        if draft.total <= 0:
            errors.append("total must be greater than 0")
        if errors:
            raise ValidationFailed("order", errors)

        now = self.clock()
        record = {**draft.to_record(), "status": "pending", "createdAt": now}
        order_id = await self.store.create(ORDER.collection, record)
        order = Order.model_validate({"id": order_id, **record})

        await self._record_event(
            order_id,
            ORDER.aggregate_type,
            OrderPlaced(
                order_id=order_id,
                restaurant_id=order.restaurant_id,
                total=order.total,
                status=order.status,
                timestamp=now,
            ),
        )
        logger.info("Order %s placed at %s (total %.2f)", order_id, order.restaurant_id, order.total)
        return order

    async def create_booking(self, draft: BookingDraft | dict) -> Booking:
        """Validate and store a new booking; paymentStatus is taken as supplied."""
        draft = _parse(BookingDraft, draft, "booking")
        errors = [
            f"{field} is required"
            for field in ("date", "time", "phone")
            if not getattr(draft, field).strip()
        ]
        if draft.amount < 0:
            errors.append("amount must not be negative")
        if errors:
            raise ValidationFailed("booking", errors)

        now = self.clock()
        record = {**draft.to_record(), "status": "pending", "createdAt": now}
        booking_id = await self.store.create(BOOKING.collection, record)
        booking = Booking.model_validate({"id": booking_id, **record})

        await self._record_event(
            booking_id,
            BOOKING.aggregate_type,
            BookingCreated(
                booking_id=booking_id,
                restaurant_id=booking.restaurant_id,
                amount=booking.amount,
                status=booking.status,
                timestamp=now,
            ),
        )
        logger.info("Booking %s created at %s (%s)", booking_id, booking.restaurant_id, booking.payment_status)
        return booking

    # ── transitions ───────────────────────────────

    async def transition_order_status(self, order_id: str, requested: str) -> Order:
        return await self._transition(ORDER, order_id, requested)

    async def transition_booking_status(self, booking_id: str, requested: str) -> Booking:
        return await self._transition(BOOKING, booking_id, requested)

    def _lock(self, entity_id: str) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        return lock

    async def _transition(self, kind: _Kind, entity_id: str, requested: str):
        # one transition per entity at a time; the next one reads the
        # written-through status instead of waiting for the store's echo
        async with self._lock(entity_id):
            record = self.mirror.get(kind.collection, entity_id)
            if record is None:
                raise EntityNotFound(kind.name, entity_id, requested)
            current = record.status
            if not is_allowed(kind.table, current, requested):
                raise IllegalTransition(kind.name, entity_id, current, requested)

            now = self.clock()
            if record.created_at is not None and now < record.created_at:
                now = record.created_at
            try:
                await self.store.update(
                    kind.collection,
                    entity_id,
                    {"status": requested, "previousStatus": current, "statusUpdatedAt": now},
                )
            except NotFound as e:
                raise EntityNotFound(kind.name, entity_id, requested) from e

            updated = record.model_copy(
                update={"status": requested, "previous_status": current, "status_updated_at": now}
            )
            self.mirror.write_through(kind.collection, updated)

            await self._record_event(
                entity_id,
                kind.aggregate_type,
                kind.changed_event(
                    **{kind.id_field: entity_id},
                    status=requested,
                    previous_status=current,
                    timestamp=now,
                ),
            )
        logger.info("%s %s: %s -> %s", kind.aggregate_type, entity_id, current, requested)
        return updated

    # ── history ───────────────────────────────────

    async def get_status_history(self, entity_id: str) -> list[StatusChange]:
        """
        Ordered status timeline of an order or booking.

        Replays the stored events; records written without events fall back
        to the single previous/current pair kept on the record itself.
        """
        if self.session_factory is not None:
            async with self.session_factory() as session:
                events = await event_store.load_events(session, entity_id)
            if events:
                return StatusTimeline.from_events(events).changes

        record = self.mirror.get(ORDER.collection, entity_id) or self.mirror.get(
            BOOKING.collection, entity_id
        )
        if record is None:
            raise EntityNotFound("entity", entity_id)
        return StatusTimeline.from_record(
            record.status,
            record.created_at,
            record.previous_status,
            record.status_updated_at,
        ).changes

    async def _record_event(self, aggregate_id: str, aggregate_type: str, event: BaseModel) -> None:
        """
        Append to the status history, reloading the version once if another
        writer got there first. A second conflict is raised as ConcurrentAppend;
        the store write before it stays committed.
        """
        if self.session_factory is None:
            return
        async with self.session_factory() as session:
            for attempt in range(2):
                events = await event_store.load_events(session, aggregate_id)
                version = events[-1]["version"] if events else 0
                try:
                    await event_store.append_event(
                        session,
                        aggregate_id,
                        aggregate_type,
                        type(event).__name__,
                        event.model_dump(mode="json"),
                        version,
                    )
                except ConcurrentAppend:
                    await session.rollback()
                    if attempt:
                        raise
                    logger.warning("History of %s %s moved on, retrying append", aggregate_type, aggregate_id)
                    continue
                await session.commit()
                return
