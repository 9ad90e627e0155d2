"""Simulated clock.

Converts elapsed wall-clock time into simulated time at a configurable
multiplier. Wall time is accumulated into a remainder buffer and drained in
whole ``resolution_seconds`` quanta, so fractional progress is carried over to
the next tick instead of being truncated.

The clock owns its observer list. Listeners are invoked synchronously from the
tick, so they must not block (the simulation loop only enqueues).
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import ClockConfigurationError, ClockError
from .logging_utils import LOG_TAG_DETERMINISTIC, get_logger
from .schemas import DayPhase, SimulatedClockState, TickSignal, TimeOfDay

logger = get_logger("clock")

# Guards float noise such as 0.1 * 60 == 5.999999999999999
_DRAIN_EPSILON = 1e-9


class ClockSignal(str, Enum):
    TICK = "tick"
    TIME_SKIPPED = "time_skipped"
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    SPEED_CHANGED = "speed_changed"


@dataclass(frozen=True)
class TimeSkipped:
    previous_time: datetime
    simulated_time: datetime
    skipped: timedelta


def day_phase_for_hour(hour: int) -> DayPhase:
    if 5 <= hour < 7:
        return DayPhase.DAWN
    if 7 <= hour < 12:
        return DayPhase.MORNING
    if 12 <= hour < 18:
        return DayPhase.AFTERNOON
    if 18 <= hour < 21:
        return DayPhase.EVENING
    return DayPhase.NIGHT


class SimulationClock:
    """Drives simulated time forward and notifies subscribers on each tick.

    Parameters
    ----------
    start_time:
        Initial simulated time. Defaults to the current UTC time.
    multiplier:
        Simulated seconds per wall-clock second (must be > 0).
    tick_rate_hz:
        Wall-clock tick frequency (must be > 0).
    resolution_seconds:
        Simulated quantum drained from the remainder buffer per tick.
    time_source:
        Monotonic wall-clock function, injectable for tests.
    """

    def __init__(
        self,
        *,
        start_time: Optional[datetime] = None,
        multiplier: float = 1.0,
        tick_rate_hz: float = 1.0,
        resolution_seconds: float = 1.0,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        if not tick_rate_hz or tick_rate_hz <= 0:
            raise ClockConfigurationError(field="tick_rate_hz", value=tick_rate_hz, reason="must be > 0")
        if multiplier <= 0:
            raise ClockConfigurationError(field="multiplier", value=multiplier, reason="must be > 0")
        if resolution_seconds <= 0:
            raise ClockConfigurationError(
                field="resolution_seconds", value=resolution_seconds, reason="must be > 0"
            )

        self._simulated_time = start_time or datetime.now(timezone.utc).replace(microsecond=0)
        self._multiplier = float(multiplier)
        self._tick_rate_hz = float(tick_rate_hz)
        self._resolution = float(resolution_seconds)
        self._time_source = time_source

        self._paused = True
        self._wall_origin: Optional[float] = None
        self._last_wall: Optional[float] = None
        self._remainder = 0.0
        self._ticks = 0
        self._listeners: Dict[ClockSignal, List[Callable[[Any], None]]] = {s: [] for s in ClockSignal}
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, signal: ClockSignal, callback: Callable[[Any], None]) -> None:
        self._listeners[signal].append(callback)

    def unsubscribe(self, signal: ClockSignal, callback: Callable[[Any], None]) -> None:
        with contextlib.suppress(ValueError):
            self._listeners[signal].remove(callback)

    def _emit(self, signal: ClockSignal, payload: Any) -> None:
        for callback in list(self._listeners[signal]):
            try:
                callback(payload)
            except Exception:
                # A faulty subscriber must not stop time.
                logger.exception("[CLOCK] %s listener %r failed", signal.value, callback)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def now(self) -> datetime:
        return self._simulated_time

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def multiplier(self) -> float:
        return self._multiplier

    @property
    def tick_rate_hz(self) -> float:
        return self._tick_rate_hz

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin emitting ticks.

        Inside a running event loop the clock schedules its own tick task;
        otherwise the caller drives it with :meth:`tick_once`.
        """
        if not self._paused:
            logger.debug("[CLOCK] start() ignored, clock already running")
            return
        self._run_from_pause()
        if self._wall_origin is None:
            self._wall_origin = self._last_wall
        logger.info("%s [CLOCK] started at %s (x%s, %s Hz)", LOG_TAG_DETERMINISTIC,
                    self._simulated_time.isoformat(), self._multiplier, self._tick_rate_hz)
        self._emit(ClockSignal.STARTED, self.get_state())

    def resume(self) -> None:
        if not self._paused:
            logger.debug("[CLOCK] resume() ignored, clock already running")
            return
        self._run_from_pause()
        logger.info("%s [CLOCK] resumed at %s", LOG_TAG_DETERMINISTIC, self._simulated_time.isoformat())
        self._emit(ClockSignal.RESUMED, self.get_state())

    def pause(self) -> None:
        if self._paused:
            logger.debug("[CLOCK] pause() ignored, clock already paused")
            return
        # Bank the partial interval since the last tick; it drains after resume.
        self._accumulate(self._time_source())
        self._paused = True
        logger.info("%s [CLOCK] paused at %s", LOG_TAG_DETERMINISTIC, self._simulated_time.isoformat())
        self._emit(ClockSignal.PAUSED, self.get_state())

    async def stop(self) -> None:
        """Pause and tear down the background tick task."""
        if not self._paused:
            self.pause()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _run_from_pause(self) -> None:
        self._paused = False
        # Paused wall time is never converted into simulated time.
        self._last_wall = self._time_source()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="genworld-clock")

    async def _run(self) -> None:
        interval = 1.0 / self._tick_rate_hz
        while not self._paused:
            await asyncio.sleep(interval)
            if self._paused:
                break
            self.tick_once()

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    def _accumulate(self, wall_now: float) -> None:
        if self._last_wall is None:
            self._last_wall = wall_now
            return
        delta_wall = max(0.0, wall_now - self._last_wall)
        self._last_wall = wall_now
        self._remainder += delta_wall * self._multiplier

    def tick_once(self) -> Optional[TickSignal]:
        """Advance simulated time by the wall time elapsed since the last tick.

        Returns the emitted signal, or ``None`` when paused or when less than
        one quantum has accumulated.
        """
        if self._paused:
            return None
        self._accumulate(self._time_source())

        quanta = math.floor((self._remainder + _DRAIN_EPSILON) / self._resolution)
        if quanta <= 0:
            return None
        drained = quanta * self._resolution
        self._remainder = max(0.0, self._remainder - drained)
        delta = timedelta(seconds=drained)
        self._simulated_time += delta
        self._ticks += 1

        signal = TickSignal(
            simulated_time=self._simulated_time,
            ticks_elapsed=self._ticks,
            delta_simulated=delta,
        )
        self._emit(ClockSignal.TICK, signal)
        return signal

    def advance(self, delta: timedelta) -> TickSignal:
        """Emit one tick of exactly ``delta`` simulated time, ignoring wall time.

        Used for batch runs and replays. Works whether or not the clock is
        running and leaves the remainder buffer untouched.
        """
        if delta <= timedelta(0):
            raise ClockError(f"advance requires a positive delta, got {delta!r}")
        self._simulated_time += delta
        self._ticks += 1
        signal = TickSignal(simulated_time=self._simulated_time, ticks_elapsed=self._ticks, delta_simulated=delta)
        self._emit(ClockSignal.TICK, signal)
        return signal

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def set_speed(self, multiplier: float) -> None:
        """Change the multiplier; time already elapsed keeps the old rate."""
        if multiplier is None or multiplier <= 0:
            raise ClockError(f"multiplier must be > 0, got {multiplier!r}")
        if not self._paused:
            self._accumulate(self._time_source())
        previous, self._multiplier = self._multiplier, float(multiplier)
        logger.info("%s [CLOCK] speed x%s -> x%s", LOG_TAG_DETERMINISTIC, previous, self._multiplier)
        self._emit(ClockSignal.SPEED_CHANGED, self.get_state())

    def skip_time(self, minutes: float) -> TimeSkipped:
        """Jump forward immediately. Emits ``TIME_SKIPPED``, never ``TICK``."""
        if minutes is None or minutes <= 0:
            raise ClockError(f"skip amount must be > 0 minutes, got {minutes!r}")
        previous = self._simulated_time
        skipped = timedelta(minutes=minutes)
        self._simulated_time = previous + skipped
        event = TimeSkipped(previous_time=previous, simulated_time=self._simulated_time, skipped=skipped)
        logger.info("%s [CLOCK] skipped %s minutes to %s", LOG_TAG_DETERMINISTIC, minutes,
                    self._simulated_time.isoformat())
        self._emit(ClockSignal.TIME_SKIPPED, event)
        return event

    def get_state(self) -> SimulatedClockState:
        return SimulatedClockState(
            wall_clock_origin=self._wall_origin,
            simulated_time=self._simulated_time,
            multiplier=self._multiplier,
            tick_rate_hz=self._tick_rate_hz,
            paused=self._paused,
            ticks_elapsed=self._ticks,
            remainder_seconds=self._remainder,
        )

    def get_time_of_day(self) -> TimeOfDay:
        hour = self._simulated_time.hour
        return TimeOfDay(
            hour=hour,
            minute=self._simulated_time.minute,
            phase=day_phase_for_hour(hour),
            is_daytime=6 <= hour < 20,
        )
