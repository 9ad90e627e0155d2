"""Tests for the event queue and schedule parsing."""

from datetime import datetime, timedelta, timezone

import pytest

from genworld.errors import InvalidScheduleError
from genworld.events import EventQueue, parse_event_time, parse_interval
from genworld.schemas import EventKind, EventPriority, RecurrenceRule, ScheduledEvent

START = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


def make_queue() -> EventQueue:
    return EventQueue(now_fn=lambda: START)


def test_event_fires_exactly_when_due():
    queue = make_queue()
    event_id = queue.schedule(
        EventKind.WORLD_EVENT,
        {"description": "Thunder rolls in"},
        due_at=START + timedelta(seconds=30),
        priority=EventPriority.HIGH,
    )

    assert queue.drain_due(START + timedelta(seconds=29)) == []
    due = queue.drain_due(START + timedelta(seconds=30))

    assert [e.id for e in due] == [event_id]
    assert due[0].priority == EventPriority.HIGH
    assert len(queue) == 0


def test_higher_priority_first_then_insertion_order():
    queue = make_queue()
    due_at = START + timedelta(minutes=1)
    low = queue.schedule(EventKind.SYSTEM, due_at=due_at, priority=EventPriority.LOW)
    first_normal = queue.schedule(EventKind.SYSTEM, due_at=due_at)
    critical = queue.schedule(EventKind.SYSTEM, due_at=due_at, priority=EventPriority.CRITICAL)
    second_normal = queue.schedule(EventKind.SYSTEM, due_at=due_at)
    earlier = queue.schedule(EventKind.SYSTEM, due_at=START, priority=EventPriority.LOW)

    drained = [e.id for e in queue.drain_due(due_at)]

    assert drained == [earlier, critical, first_normal, second_normal, low]


def test_recurring_event_keeps_fixed_phase():
    queue = make_queue()
    event_id = queue.schedule_recurring(EventKind.SCHEDULED, {"description": "bell"}, start=START, interval="10m")

    # Draining late catches up on every missed occurrence
    late = queue.drain_due(START + timedelta(minutes=25))
    assert [e.due_at for e in late] == [START + timedelta(minutes=10), START + timedelta(minutes=20)]
    assert [e.occurrence for e in late] == [1, 2]
    assert all(e.id == event_id for e in late)

    following = queue.drain_due(START + timedelta(minutes=31))
    assert [e.due_at for e in following] == [START + timedelta(minutes=30)]
    assert queue.peek_upcoming(1)[0].due_at == START + timedelta(minutes=40)


def test_recurring_event_honours_max_occurrences_and_end():
    queue = make_queue()
    queue.schedule_recurring(EventKind.SCHEDULED, start=START, interval="1h", max_occurrences=2)
    queue.schedule_recurring(
        EventKind.SCHEDULED, start=START, interval="30m", end_at=START + timedelta(minutes=60)
    )

    drained = queue.drain_due(START + timedelta(hours=5))

    assert len(drained) == 4  # two hourly, two half-hourly
    assert queue.stats()["recurring"] == 0
    assert len(queue) == 0


def test_schedule_event_with_recurrence_rule():
    queue = make_queue()
    event = ScheduledEvent(
        kind=EventKind.SCHEDULED,
        due_at=START,
        recurrence=RecurrenceRule(interval=timedelta(minutes=15), max_occurrences=1),
    )
    queue.schedule_event(event)

    assert [e.id for e in queue.drain_due(START + timedelta(minutes=15))] == [event.id]
    assert queue.drain_due(START + timedelta(hours=1)) == []


def test_cancel_removes_pending_and_stops_recurrence():
    queue = make_queue()
    one_shot = queue.schedule(EventKind.WORLD_EVENT, due_at=START + timedelta(minutes=5))
    recurring = queue.schedule_recurring(EventKind.SCHEDULED, start=START, interval="5m")

    assert queue.cancel(one_shot) is True
    assert queue.cancel(one_shot) is False
    assert queue.cancel(recurring) is True

    assert queue.drain_due(START + timedelta(hours=1)) == []
    assert queue.stats()["queued"] == 0


def test_stats_report_processed_and_next_due():
    queue = make_queue()
    queue.schedule(EventKind.SYSTEM, due_at=START)
    later = START + timedelta(hours=2)
    queue.schedule(EventKind.SYSTEM, due_at=later)
    queue.drain_due(START)

    stats = queue.stats()
    assert stats["processed"] == 1
    assert stats["queued"] == 1
    assert stats["next_due"] == later


def test_daily_trigger_rolls_to_tomorrow_when_past():
    assert parse_event_time("09:30", START) == START.replace(hour=9, minute=30)
    assert parse_event_time("07:30", START) == START.replace(hour=7, minute=30) + timedelta(days=1)
    assert parse_event_time("08:00", START) == START + timedelta(days=1)


def test_iso_time_parses_and_inherits_timezone():
    parsed = parse_event_time("2024-01-02T10:00:00", START)
    assert parsed == datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["25:00", "tomorrow", "12:75"])
def test_invalid_times_are_rejected(value):
    with pytest.raises(InvalidScheduleError):
        parse_event_time(value, START)


def test_parse_interval():
    assert parse_interval("30s") == timedelta(seconds=30)
    assert parse_interval("15m") == timedelta(minutes=15)
    assert parse_interval("2h") == timedelta(hours=2)
    assert parse_interval("1d") == timedelta(days=1)
    assert parse_interval(timedelta(minutes=3)) == timedelta(minutes=3)

    for bad in ("0m", "10x", "", "-5m"):
        with pytest.raises(InvalidScheduleError):
            parse_interval(bad)


def test_recurrence_ending_before_its_first_slot_never_fires():
    queue = make_queue()
    queue.schedule_recurring(
        EventKind.SCHEDULED, {"description": "bell"}, start=START, interval="1h", end_at=START + timedelta(minutes=30)
    )

    assert len(queue) == 0
    assert queue.stats()["recurring"] == 0
    assert queue.drain_due(START + timedelta(hours=3)) == []


def test_catch_up_occurrences_interleave_with_one_shots():
    queue = make_queue()
    bell = queue.schedule_recurring(EventKind.SCHEDULED, start=START, interval="10m")
    delivery = queue.schedule(EventKind.WORLD_EVENT, due_at=START + timedelta(minutes=15))
    later = queue.schedule(EventKind.WORLD_EVENT, due_at=START + timedelta(hours=2))

    drained = queue.drain_due(START + timedelta(minutes=25))

    assert [e.id for e in drained] == [bell, delivery, bell]
    assert [e.due_at for e in drained] == [START + timedelta(minutes=m) for m in (10, 15, 20)]
    assert [e.id for e in queue.peek_upcoming(2)] == [bell, later]
    assert queue.stats()["processed"] == 3


def test_naive_times_take_the_clock_timezone():
    queue = make_queue()
    event_id = queue.schedule(EventKind.WORLD_EVENT, due_at=datetime(2024, 1, 1, 8, 0, 30))
    prebuilt = ScheduledEvent(kind=EventKind.SYSTEM, due_at=datetime(2024, 1, 1, 8, 1))
    queue.schedule_event(prebuilt)

    assert queue.peek_upcoming(1)[0].due_at == START + timedelta(seconds=30)
    drained = queue.drain_due(START + timedelta(minutes=1))
    assert [e.id for e in drained] == [event_id, prebuilt.id]


def test_aware_times_are_rejected_on_a_naive_clock():
    naive_now = datetime(2024, 1, 1, 8, 0, 0)
    queue = EventQueue(now_fn=lambda: naive_now)

    with pytest.raises(InvalidScheduleError):
        parse_event_time("2024-01-01T10:00:00+02:00", naive_now)
    with pytest.raises(InvalidScheduleError):
        queue.schedule(EventKind.WORLD_EVENT, due_at=START)
    assert len(queue) == 0
    assert parse_event_time("2024-01-01T10:00:00", naive_now) == datetime(2024, 1, 1, 10, 0)
