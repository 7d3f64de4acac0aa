"""
Delivery progress tracking

A per-order, per-session state machine for live-tracking display. It never
writes back to the authoritative order status.

    pending(0) → confirmed(10) → preparing(25) → ready_for_pickup(40)
    → assigned(50) → picked_up(75) → on_way(90) → delivered(100)

Progress only moves forward, one state at a time. When a confirmed order is
first observed a one-shot timer advances it to preparing after
``prep_delay`` seconds, standing in for a kitchen event feed. The estimated
arrival is fixed once, when the delivery partner assignment is observed, and
no longer reported once the order is delivered. An order seen
jumping straight to delivered never gets one.

Clock, timer scheduler and random source are injectable so tests can drive
the simulation deterministically.
"""

import asyncio
import contextlib
import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Protocol

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .errors import InitializationFailed
from .models import now_local
from .subscriber import EntityMirror

logger = logging.getLogger(__name__)

DELIVERY_PROGRESS: dict[str, int] = {
    "pending": 0,
    "confirmed": 10,
    "preparing": 25,
    "ready_for_pickup": 40,
    "assigned": 50,
    "picked_up": 75,
    "on_way": 90,
    "delivered": 100,
}
DELIVERY_STATES = tuple(DELIVERY_PROGRESS)
EN_ROUTE = frozenset({"assigned", "picked_up", "on_way"})

# authoritative order status -> delivery state; cancelled has no counterpart
ORDER_TO_DELIVERY = {
    "pending": "pending",
    "confirmed": "confirmed",
    "preparing": "preparing",
    "ready": "ready_for_pickup",
    "delivered": "delivered",
    "completed": "delivered",
}


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def loop_scheduler(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class DeliveryProgressSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: str
    status: str
    progress_percent: int
    estimated_arrival: datetime | None = None
    countdown: str | None = None


class DeliveryTracker:
    def __init__(
        self,
        order_id: str,
        clock: Callable[[], datetime] = now_local,
        scheduler: Scheduler = loop_scheduler,
        rng: random.Random | None = None,
        prep_delay: float = 5.0,
        eta_offset: timedelta = timedelta(minutes=15),
        eta_jitter: timedelta = timedelta(0),
        on_change: Callable[[DeliveryProgressSnapshot], None] | None = None,
    ) -> None:
        self.order_id = order_id
        self.clock = clock
        self.scheduler = scheduler
        self.rng = rng or random.Random()
        self.prep_delay = prep_delay
        self.eta_offset = eta_offset
        self.eta_jitter = eta_jitter
        self.on_change = on_change
        self.status: str | None = None
        self.estimated_arrival: datetime | None = None
        self.closed = False
        self._prep_timer: TimerHandle | None = None

    @property
    def progress_percent(self) -> int:
        return DELIVERY_PROGRESS[self.status or "pending"]

    def observe(self, status: str) -> list[DeliveryProgressSnapshot]:
        """
        Feed an observed order or delivery status.

        Returns the snapshots emitted, one per state entered. Observing the
        current or an earlier state, or an unmapped one, emits nothing.
        """
        target = ORDER_TO_DELIVERY.get(status, status)
        if self.closed or target not in DELIVERY_PROGRESS:
            return []
        if self.status is None:
            steps = [target]
        else:
            current = DELIVERY_STATES.index(self.status)
            steps = list(DELIVERY_STATES[current + 1 : DELIVERY_STATES.index(target) + 1])
        emitted = [self._enter(state, target) for state in steps]
        if status == "confirmed" and self.status == "confirmed" and self._prep_timer is None:
            self._prep_timer = self.scheduler(self.prep_delay, self._kitchen_ready)
        return emitted

    def _kitchen_ready(self) -> None:
        self.observe("preparing")

    def _enter(self, state: str, target: str) -> DeliveryProgressSnapshot:
        self.status = state
        if self.estimated_arrival is None and state in EN_ROUTE and target in EN_ROUTE:
            jitter = 0.0
            if self.eta_jitter:
                span = self.eta_jitter.total_seconds()
                jitter = self.rng.uniform(-span, span)
            self.estimated_arrival = self.clock() + self.eta_offset + timedelta(seconds=jitter)
        snapshot = self.snapshot()
        if self.on_change is not None:
            self.on_change(snapshot)
        return snapshot

    def time_remaining(self) -> timedelta | None:
        if self.estimated_arrival is None or self.status == "delivered":
            return None
        return max(self.estimated_arrival - self.clock(), timedelta(0))

    def countdown(self) -> str | None:
        remaining = self.time_remaining()
        if remaining is None:
            return None
        if remaining <= timedelta(0):
            return "Arriving now"
        minutes, seconds = divmod(int(remaining.total_seconds()), 60)
        if minutes > 0:
            return f"{minutes}m {seconds}s remaining"
        return f"{seconds}s remaining"

    def snapshot(self) -> DeliveryProgressSnapshot:
        """Current state; call on every display refresh to update the countdown."""
        return DeliveryProgressSnapshot(
            order_id=self.order_id,
            status=self.status or "pending",
            progress_percent=self.progress_percent,
            estimated_arrival=None if self.status == "delivered" else self.estimated_arrival,
            countdown=self.countdown(),
        )

    def close(self) -> None:
        if self._prep_timer is not None:
            self._prep_timer.cancel()
        self.closed = True


_DONE = object()


class ProgressFeed:
    """
    Stream of progress snapshots for one order, driven by mirror updates.

    Ends after the delivered snapshot. Leaving the stream (aclose or the
    async with block) cancels the tracker's timers.
    """

    def __init__(self, mirror: EntityMirror, tracker: DeliveryTracker) -> None:
        self.tracker = tracker
        self._queue: asyncio.Queue = asyncio.Queue()
        tracker.on_change = self._push
        self._updates = mirror.listen()
        self._task = asyncio.create_task(
            self._follow(mirror), name=f"progress:{tracker.order_id}"
        )

    def _push(self, snapshot: DeliveryProgressSnapshot) -> None:
        self._queue.put_nowait(snapshot)
        if snapshot.status == "delivered":
            self._queue.put_nowait(_DONE)

    def _observe(self, orders) -> None:
        for order in orders:
            if order.id == self.tracker.order_id:
                self.tracker.observe(order.status)
                return

    async def _follow(self, mirror: EntityMirror) -> None:
        try:
            self._observe(mirror.orders)
            async for update in self._updates:
                if update.collection == "orders":
                    self._observe(update.records)
        except InitializationFailed as e:
            self._queue.put_nowait(e)
        self._queue.put_nowait(_DONE)

    def __aiter__(self) -> "ProgressFeed":
        return self

    async def __anext__(self) -> DeliveryProgressSnapshot:
        item = await self._queue.get()
        if item is _DONE:
            await self.aclose()
            raise StopAsyncIteration
        if isinstance(item, Exception):
            await self.aclose()
            raise item
        return item

    async def aclose(self) -> None:
        self.tracker.close()
        self._updates.close()
        if not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def __aenter__(self) -> "ProgressFeed":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class DeliveryProgressSimulator:
    """
    Creates trackers with shared settings and cancels all of them on close,
    so nothing leaks from one viewing session into the next.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = now_local,
        scheduler: Scheduler = loop_scheduler,
        rng: random.Random | None = None,
        prep_delay: float = 5.0,
        eta_offset: timedelta = timedelta(minutes=15),
        eta_jitter: timedelta = timedelta(0),
    ) -> None:
        self.options = dict(
            clock=clock,
            scheduler=scheduler,
            rng=rng or random.Random(),
            prep_delay=prep_delay,
            eta_offset=eta_offset,
            eta_jitter=eta_jitter,
        )
        self._trackers: set[DeliveryTracker] = set()

    def track(self, order_id: str) -> DeliveryTracker:
        tracker = DeliveryTracker(order_id, **self.options)
        self._trackers.add(tracker)
        return tracker

    def subscribe_to_progress(self, mirror: EntityMirror, order_id: str) -> ProgressFeed:
        return ProgressFeed(mirror, self.track(order_id))

    def close(self) -> None:
        for tracker in self._trackers:
            tracker.close()
        self._trackers.clear()
        logger.debug("Progress simulator closed")
