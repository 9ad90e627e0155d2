"""Priority event queue keyed by simulated due time.

Events are kept in a list sorted by ``(due_at ascending, priority descending)``
with insertion order preserved among equal keys. Recurring events use
fixed-phase scheduling: occurrence *n* is due at ``start + interval * n``
regardless of when the previous occurrence was drained.
"""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import InvalidScheduleError
from .logging_utils import LOG_TAG_DETERMINISTIC, get_logger
from .schemas import EventKind, EventPriority, RecurrenceRule, ScheduledEvent, new_id

logger = get_logger("events")

_INTERVAL_RE = re.compile(r"^(\d+)([smhd])$")
_DAILY_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(value: Union[str, timedelta]) -> timedelta:
    """Parse ``"30m"``/``"1h"``/``"2d"`` style intervals into a timedelta."""
    if isinstance(value, timedelta):
        if value <= timedelta(0):
            raise InvalidScheduleError(value, "interval must be positive")
        return value
    match = _INTERVAL_RE.match(str(value).strip())
    if not match:
        raise InvalidScheduleError(value, "expected <number><s|m|h|d>, e.g. '30m'")
    amount, unit = int(match.group(1)), match.group(2)
    if amount <= 0:
        raise InvalidScheduleError(value, "interval must be positive")
    return timedelta(seconds=amount * _UNIT_SECONDS[unit])


def parse_event_time(value: Union[str, datetime], now: datetime) -> datetime:
    """Resolve an absolute instant.

    Accepts a datetime, an ISO-8601 string, or a daily ``"HH:MM"`` trigger
    which resolves to today at that time, or tomorrow if already past.
    Naive values are read in the timezone of ``now``; an aware value cannot
    be placed on a naive clock and raises ``InvalidScheduleError``.
    """
    if isinstance(value, datetime):
        return _align(value, now, value)
    text = str(value).strip()
    daily = _DAILY_RE.match(text)
    if daily:
        hour, minute = int(daily.group(1)), int(daily.group(2))
        if hour > 23 or minute > 59:
            raise InvalidScheduleError(value, "hour must be 0-23 and minute 0-59")
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidScheduleError(value, "expected 'HH:MM' or an ISO-8601 datetime") from None
    return _align(parsed, now, value)


def _align(moment: datetime, now: datetime, original: Any) -> datetime:
    if moment.tzinfo is None and now.tzinfo is not None:
        return moment.replace(tzinfo=now.tzinfo)
    if moment.tzinfo is not None and now.tzinfo is None:
        raise InvalidScheduleError(original, "timezone-aware time given but the simulation clock is naive")
    return moment


def _sort_key(event: ScheduledEvent) -> Tuple[datetime, int]:
    return event.due_at, -int(event.priority)


# Sorts after every real priority among events due at the same instant.
_AFTER_ALL_PRIORITIES = 1


@dataclass
class _Recurrence:
    template: ScheduledEvent
    origin: datetime
    rule: RecurrenceRule
    occurrences: int = 0


class EventQueue:
    """Ordered collection of one-time and recurring simulated events."""

    def __init__(self, *, now_fn: Optional[Callable[[], datetime]] = None) -> None:
        self._queue: List[ScheduledEvent] = []
        self._recurring: Dict[str, _Recurrence] = {}
        self._processed = 0
        self._now_fn = now_fn or datetime.now

    def __len__(self) -> int:
        return len(self._queue)

    def _insert(self, event: ScheduledEvent) -> None:
        bisect.insort_right(self._queue, event, key=_sort_key)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(
        self,
        kind: EventKind,
        payload: Optional[Dict[str, Any]] = None,
        *,
        due_at: Union[str, datetime],
        priority: EventPriority = EventPriority.NORMAL,
        event_id: Optional[str] = None,
    ) -> str:
        """Queue a one-shot event and return its id."""
        event = ScheduledEvent(
            id=event_id or new_id(),
            kind=EventKind(kind),
            due_at=parse_event_time(due_at, self._now_fn()),
            priority=EventPriority(priority),
            payload=dict(payload or {}),
        )
        self._insert(event)
        logger.debug("[EVENTS] scheduled %s %s at %s", event.kind.value, event.id, event.due_at)
        return event.id

    def schedule_event(self, event: ScheduledEvent) -> str:
        """Queue a pre-built event; recurring events go through :meth:`schedule_recurring`."""
        if event.recurrence is not None:
            return self.schedule_recurring(
                event.kind,
                event.payload,
                start=event.due_at,
                interval=event.recurrence.interval,
                priority=event.priority,
                end_at=event.recurrence.end_at,
                max_occurrences=event.recurrence.max_occurrences,
                event_id=event.id,
            )
        due_at = _align(event.due_at, self._now_fn(), event.due_at)
        self._insert(event.model_copy(update={"due_at": due_at}, deep=True))
        return event.id

    def schedule_recurring(
        self,
        kind: EventKind,
        payload: Optional[Dict[str, Any]] = None,
        *,
        start: Union[str, datetime],
        interval: Union[str, timedelta],
        priority: EventPriority = EventPriority.NORMAL,
        end_at: Optional[Union[str, datetime]] = None,
        max_occurrences: Optional[int] = None,
        event_id: Optional[str] = None,
    ) -> str:
        """Register a recurring event. The first occurrence is due at ``start + interval``."""
        now = self._now_fn()
        origin = parse_event_time(start, now)
        if max_occurrences is not None and max_occurrences < 1:
            raise InvalidScheduleError(max_occurrences, "max_occurrences must be >= 1")
        rule = RecurrenceRule(
            interval=parse_interval(interval),
            end_at=parse_event_time(end_at, now) if end_at is not None else None,
            max_occurrences=max_occurrences,
        )
        template = ScheduledEvent(
            id=event_id or new_id(),
            kind=EventKind(kind),
            due_at=origin,
            priority=EventPriority(priority),
            payload=dict(payload or {}),
            recurrence=rule,
        )
        entry = _Recurrence(template=template, origin=origin, rule=rule)
        self._recurring[template.id] = entry
        logger.debug("[EVENTS] recurring %s every %s from %s", template.id, rule.interval, origin)
        self._queue_next(entry)
        return template.id

    def _occurrence(self, entry: _Recurrence) -> ScheduledEvent:
        index = entry.occurrences + 1
        return entry.template.model_copy(
            update={"due_at": entry.origin + entry.rule.interval * index, "occurrence": index},
            deep=True,
        )

    def cancel(self, event_id: str) -> bool:
        """Remove queued occurrences of ``event_id`` and stop any recurrence."""
        recurring = self._recurring.pop(event_id, None) is not None
        before = len(self._queue)
        self._queue = [event for event in self._queue if event.id != event_id]
        removed = before != len(self._queue)
        if removed or recurring:
            logger.debug("[EVENTS] cancelled %s", event_id)
        return removed or recurring

    def clear(self) -> None:
        self._queue.clear()
        self._recurring.clear()

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def drain_due(self, now: datetime) -> List[ScheduledEvent]:
        """Pop every event due at or before ``now`` in queue order.

        Recurring events are re-inserted at their next fixed-phase slot, which
        may itself already be due when draining late; those catch-up
        occurrences are returned in the same call.
        """
        due: List[ScheduledEvent] = []
        while True:
            cut = bisect.bisect_right(self._queue, (now, _AFTER_ALL_PRIORITIES), key=_sort_key)
            if not cut:
                break
            batch = self._queue[:cut]
            del self._queue[:cut]
            due.extend(batch)
            for event in batch:
                if event.recurrence is not None:
                    self._advance_recurrence(event)

        if due:
            # Catch-up occurrences were appended after their batch.
            due.sort(key=_sort_key)
            self._processed += len(due)
            logger.debug("%s [EVENTS] drained %d event(s) at %s", LOG_TAG_DETERMINISTIC, len(due), now)
        return due

    def _advance_recurrence(self, event: ScheduledEvent) -> None:
        entry = self._recurring.get(event.id)
        if entry is None:
            return
        entry.occurrences = event.occurrence
        rule = entry.rule
        if rule.max_occurrences is not None and entry.occurrences >= rule.max_occurrences:
            self._retire(event.id, "max occurrences reached")
            return
        self._queue_next(entry)

    def _queue_next(self, entry: _Recurrence) -> None:
        following = self._occurrence(entry)
        end_at = entry.rule.end_at
        if end_at is not None and following.due_at > end_at:
            self._retire(entry.template.id, "next occurrence after end time")
            return
        self._insert(following)

    def _retire(self, event_id: str, reason: str) -> None:
        self._recurring.pop(event_id, None)
        logger.debug("[EVENTS] recurrence %s retired (%s)", event_id, reason)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def peek_upcoming(self, n: int = 10) -> List[ScheduledEvent]:
        return [event.model_copy(deep=True) for event in self._queue[: max(0, n)]]

    def stats(self) -> Dict[str, Any]:
        return {
            "queued": len(self._queue),
            "recurring": len(self._recurring),
            "processed": self._processed,
            "next_due": self._queue[0].due_at if self._queue else None,
        }
