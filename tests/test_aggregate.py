"""Tests for the transition tables and the status timeline replay."""

from datetime import datetime, timezone

import pytest

from dinehub.aggregate import (
    BOOKING_TRANSITIONS,
    ORDER_TRANSITIONS,
    StatusTimeline,
    is_booking_transition_allowed,
    is_order_transition_allowed,
)

ORDER_STATUSES = list(ORDER_TRANSITIONS)
BOOKING_STATUSES = list(BOOKING_TRANSITIONS)


@pytest.mark.parametrize("terminal", ["completed", "cancelled"])
@pytest.mark.parametrize("requested", ORDER_STATUSES)
def test_terminal_order_statuses_admit_nothing(terminal, requested):
    assert is_order_transition_allowed(terminal, requested) is False


@pytest.mark.parametrize("terminal", ["completed", "cancelled"])
@pytest.mark.parametrize("requested", BOOKING_STATUSES)
def test_terminal_booking_statuses_admit_nothing(terminal, requested):
    assert is_booking_transition_allowed(terminal, requested) is False


@pytest.mark.parametrize("current", ORDER_STATUSES)
@pytest.mark.parametrize("requested", ORDER_STATUSES)
def test_order_table_is_exhaustive(current, requested):
    expected = requested in ORDER_TRANSITIONS[current]
    assert is_order_transition_allowed(current, requested) is expected


@pytest.mark.parametrize("current", BOOKING_STATUSES)
@pytest.mark.parametrize("requested", BOOKING_STATUSES)
def test_booking_table_is_exhaustive(current, requested):
    expected = requested in BOOKING_TRANSITIONS[current]
    assert is_booking_transition_allowed(current, requested) is expected


def test_order_happy_path_is_allowed():
    path = ["pending", "confirmed", "preparing", "ready", "delivered", "completed"]
    for current, requested in zip(path, path[1:]):
        assert is_order_transition_allowed(current, requested)


def test_delivered_order_cannot_be_cancelled():
    assert not is_order_transition_allowed("delivered", "cancelled")


def test_unknown_statuses_are_rejected():
    assert not is_order_transition_allowed("lost", "confirmed")
    assert not is_order_transition_allowed("pending", "teleported")
    assert not is_booking_transition_allowed("pending", "preparing")


class TestStatusTimeline:
    def test_replays_events_in_order(self):
        events = [
            {
                "event_type": "OrderPlaced",
                "event_data": {"order_id": "o1", "status": "pending", "timestamp": "2026-10-14T10:00:00+00:00"},
                "version": 1,
            },
            {
                "event_type": "OrderStatusChanged",
                "event_data": {"order_id": "o1", "status": "confirmed", "previous_status": "pending", "timestamp": "2026-10-14T10:02:00+00:00"},
                "version": 2,
            },
            {
                "event_type": "OrderStatusChanged",
                "event_data": {"order_id": "o1", "status": "preparing", "previous_status": "confirmed", "timestamp": "2026-10-14T10:05:00+00:00"},
                "version": 3,
            },
        ]
        timeline = StatusTimeline.from_events(events)

        assert timeline.entity_id == "o1"
        assert timeline.status == "preparing"
        assert timeline.version == 3
        assert [c.status for c in timeline.changes] == ["pending", "confirmed", "preparing"]
        assert timeline.changes[2].timestamp == datetime(2026, 10, 14, 10, 5, tzinfo=timezone.utc)

    def test_ignores_unknown_event_types(self):
        events = [
            {
                "event_type": "BookingCreated",
                "event_data": {"booking_id": "b1", "status": "pending", "timestamp": "2026-10-14T10:00:00+00:00"},
                "version": 1,
            },
            {"event_type": "SomethingElse", "event_data": {}, "version": 2},
        ]
        timeline = StatusTimeline.from_events(events)
        assert [c.status for c in timeline.changes] == ["pending"]
        assert timeline.version == 2

    def test_single_hop_reconstruction(self):
        created = datetime(2026, 10, 14, 10, tzinfo=timezone.utc)
        updated = datetime(2026, 10, 14, 11, tzinfo=timezone.utc)
        timeline = StatusTimeline.from_record("preparing", created, "confirmed", updated)
        assert [(c.status, c.timestamp) for c in timeline.changes] == [
            ("confirmed", created),
            ("preparing", updated),
        ]

    def test_reconstruction_without_transition(self):
        created = datetime(2026, 10, 14, 10, tzinfo=timezone.utc)
        timeline = StatusTimeline.from_record("pending", created)
        assert [c.status for c in timeline.changes] == ["pending"]
