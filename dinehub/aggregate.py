"""
Lifecycle aggregate

Holds the static transition tables consulted before any status mutation and
the status timeline rebuilt from the append-only event history.

Order:
    pending → confirmed → preparing → ready → delivered → completed
    any non-terminal state except delivered → cancelled

Booking:
    pending → confirmed → completed
    pending | confirmed → cancelled

completed and cancelled are terminal.
"""

from datetime import datetime

from .models import StatusChange, coerce_timestamp

ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"preparing", "cancelled"}),
    "preparing": frozenset({"ready", "cancelled"}),
    "ready": frozenset({"delivered", "cancelled"}),
    "delivered": frozenset({"completed"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

BOOKING_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

TERMINAL_STATUSES = frozenset({"completed", "cancelled"})


def is_allowed(table: dict[str, frozenset[str]], current: str, requested: str) -> bool:
    """Unknown current statuses admit nothing."""
    if current in TERMINAL_STATUSES:
        return False
    return requested in table.get(current, frozenset())


def is_order_transition_allowed(current: str, requested: str) -> bool:
    return is_allowed(ORDER_TRANSITIONS, current, requested)


def is_booking_transition_allowed(current: str, requested: str) -> bool:
    return is_allowed(BOOKING_TRANSITIONS, current, requested)


class StatusTimeline:
    """
    Status timeline of one entity, rebuilt from its events.

    apply_xxx methods fold one event each; unknown event types are ignored.
    """

    def __init__(self) -> None:
        self.entity_id: str | None = None
        self.status: str = "UNKNOWN"
        self.changes: list[StatusChange] = []
        self.version: int = 0

    # ── event application ──────────────────────────

    def apply_created(self, data: dict) -> None:
        self.entity_id = data.get("order_id") or data.get("booking_id")
        self._record(data["status"], data["timestamp"])

    def apply_status_changed(self, data: dict) -> None:
        self._record(data["status"], data["timestamp"])

    def _record(self, status: str, timestamp) -> None:
        self.status = status
        self.changes.append(
            StatusChange(status=status, timestamp=coerce_timestamp(timestamp))
        )

    # ── replay ─────────────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "OrderPlaced": self.apply_created,
            "BookingCreated": self.apply_created,
            "OrderStatusChanged": self.apply_status_changed,
            "BookingStatusChanged": self.apply_status_changed,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "StatusTimeline":
        timeline = cls()
        for e in events:
            timeline.apply_event(e["event_type"], e["event_data"])
            timeline.version = e["version"]
        return timeline

    @classmethod
    def from_record(
        cls,
        status: str,
        created_at: datetime | None,
        previous_status: str | None = None,
        status_updated_at: datetime | None = None,
    ) -> "StatusTimeline":
        """Single-hop reconstruction for records that have no stored events."""
        timeline = cls()
        if previous_status is not None and status_updated_at is not None:
            if created_at is not None:
                timeline._record(previous_status, created_at)
            timeline._record(status, status_updated_at)
        elif created_at is not None:
            timeline._record(status, created_at)
        else:
            timeline.status = status
        return timeline
