"""
Main simulation loop.

All collaborators are injected; nothing here reads files or environment.

Each tick:
1. Advance world time to the tick's simulated time
2. Drain due events and fold them into world state (before any agent runs)
3. End dialogues whose participants drifted apart
4. Run agents through the pipeline in fixed-size batches, isolating failures
5. Persist the committed world and notify change listeners

Ticks come from the clock as signals. The clock listener only enqueues; a
single consumer task processes ticks one at a time, and a tick that arrives
while another is still queued is dropped and logged. Simulated time is never
lost by a drop because the next processed tick carries the clock's time and
drains every event due up to it.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import random
import time
from collections import deque
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

from .clock import ClockSignal, SimulationClock, TimeSkipped
from .cognition.dialogue import DialogueCoordinator
from .cognition.planner import Planner
from .cognition.reflection import ReflectionTrigger
from .cognition.service import CognitionGateway, CognitionService
from .config import Config, SimulationConfig
from .errors import AgentProcessingError, GenworldError, StoreError, WorldStateError
from .events import EventQueue
from .logging_utils import LOG_TAG_DETERMINISTIC, LOG_TAG_ERROR, LOG_TAG_SUCCESS, get_logger
from .memory import MemoryStream, RetrievalWeights
from .persistence import InMemoryStore, RetryingStore, StoreStrategy
from .pipeline import AgentPipeline
from .schemas import (
    Agent,
    AgentError,
    AgentStatus,
    ChangeNotification,
    EventKind,
    GlobalEffect,
    Location,
    ScheduledEvent,
    TickResult,
    TickSignal,
    Weather,
    WorldEventRecord,
    WorldState,
)
from .world_state import WorldStateManager

logger = get_logger("orchestrator")

ChangeListener = Callable[[ChangeNotification], Any]


class LoopState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class SimulationLoop:
    """
    Drives one world: clock ticks in, committed world versions out.

    ``start``/``pause``/``resume``/``stop`` are idempotent; calling one that
    does not apply to the current state logs at debug level and returns. For
    batch runs without wall-clock pacing use :meth:`run`, which advances the
    clock manually and processes each tick inline.
    """

    def __init__(
        self,
        world: WorldStateManager,
        *,
        cognition: Union[CognitionService, CognitionGateway],
        store: Optional[StoreStrategy] = None,
        config: Optional[SimulationConfig] = None,
        clock: Optional[SimulationClock] = None,
        events: Optional[EventQueue] = None,
        rng: Optional[random.Random] = None,
        listeners: Optional[Sequence[ChangeListener]] = None,
    ) -> None:
        """Wire the engine components around ``world``.

        Args:
            world: State manager for the simulated world
            cognition: Cognition Service, or a gateway already wrapping one
            store: Durable store (defaults to InMemoryStore); wrapped in
                RetryingStore unless it already is one
            config: Engine settings (defaults to SimulationConfig())
            clock: Clock to subscribe to; built from config when omitted
            events: Event queue; built on the clock's time when omitted
            rng: Random source for dialogue initiation, injectable for tests
            listeners: Callables receiving a ChangeNotification after each tick
        """
        self.world = world
        self.config = config or SimulationConfig()
        self.rng = rng or random.Random()

        self.clock = clock or SimulationClock(
            start_time=world.current_time,
            multiplier=self.config.multiplier,
            tick_rate_hz=self.config.tick_rate_hz,
            resolution_seconds=self.config.resolution_seconds,
        )
        self.events = events or EventQueue(now_fn=lambda: self.clock.now)

        inner_store = store or InMemoryStore()
        self.store: StoreStrategy = (
            inner_store
            if isinstance(inner_store, RetryingStore)
            else RetryingStore(
                inner_store,
                max_attempts=Config.STORE_MAX_ATTEMPTS,
                backoff_seconds=Config.STORE_BACKOFF_SECONDS,
                timeout_seconds=Config.STORE_TIMEOUT_SECONDS,
            )
        )

        self.cognition = (
            cognition
            if isinstance(cognition, CognitionGateway)
            else CognitionGateway(
                cognition,
                timeout_seconds=self.config.cognition_timeout_seconds,
                max_attempts=self.config.cognition_max_attempts,
                backoff_seconds=self.config.cognition_backoff_seconds,
            )
        )

        now_fn = lambda: self.world.current_time  # noqa: E731
        self.memory = MemoryStream(
            self.store,
            self.cognition,
            now_fn=now_fn,
            weights=RetrievalWeights(*self.config.retrieval_weights),
            half_life_hours=self.config.recency_half_life_hours,
            default_top_n=self.config.retrieval_top_n,
        )
        self.reflection = ReflectionTrigger(
            self.memory,
            self.cognition,
            threshold=self.config.reflection_threshold,
            window_hours=self.config.reflection_window_hours,
            min_memories=self.config.reflection_min_memories,
        )
        self.planner = Planner(self.cognition, now_fn=now_fn, memory=self.memory)
        self.dialogues = DialogueCoordinator(
            world,
            self.memory,
            self.cognition,
            now_fn=now_fn,
            store=self.store,
            rng=self.rng,
            max_turns=self.config.max_dialogue_turns,
        )
        self.pipeline = AgentPipeline(
            world=world,
            memory=self.memory,
            reflection=self.reflection,
            planner=self.planner,
            dialogues=self.dialogues,
            cognition=self.cognition,
            config=self.config,
            store=self.store,
            rng=self.rng,
        )

        self.state = LoopState.STOPPED
        self._listeners: List[ChangeListener] = list(listeners or [])
        self._queue: "asyncio.Queue[TickSignal]" = asyncio.Queue(maxsize=1)
        self._consumer: Optional[asyncio.Task] = None
        self._current_tick: Optional[asyncio.Task] = None
        # Set by pause()/stop(); checked between batches.
        self._halt_dispatch = False

        self._tick_count = 0
        self._dropped_ticks = 0
        self._durations: Deque[float] = deque(maxlen=self.config.tick_history)
        self._last_result: Optional[TickResult] = None

        self.clock.subscribe(ClockSignal.TICK, self._on_clock_tick)
        self.clock.subscribe(ClockSignal.TIME_SKIPPED, self._on_time_skipped)

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def add_agent(self, agent: Agent) -> None:
        self.world.put_agent(agent)
        await self.store.save_agent(agent)

    async def remove_agent(self, agent_id: str) -> None:
        self.world.remove_agent(agent_id)
        agent = self.world.get_agent(agent_id)
        if agent is not None:
            await self.store.save_agent(agent)

    async def load_agents(self) -> int:
        """Pull this world's active agents from the store into world state."""
        agents = await self.store.list_agents(self.world.world_id, AgentStatus.ACTIVE)
        for agent in agents:
            self.world.put_agent(agent)
        logger.info("%s [LOOP] loaded %d agents for world %s", LOG_TAG_DETERMINISTIC, len(agents),
                    self.world.world_id)
        return len(agents)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.state == LoopState.RUNNING:
            logger.debug("[LOOP] start() ignored, already running")
            return
        if self.state == LoopState.PAUSED:
            self.resume()
            return

        await self.store.initialize()
        self._halt_dispatch = False
        self.state = LoopState.RUNNING
        self._consumer = asyncio.create_task(self._consume(), name="genworld-loop")
        self.clock.start()
        logger.info("%s [LOOP] world %s started with %d agents", LOG_TAG_SUCCESS, self.world.world_id,
                    len(self.world.active_agents()))

    def pause(self) -> None:
        if self.state != LoopState.RUNNING:
            logger.debug("[LOOP] pause() ignored in state %s", self.state.value)
            return
        self.state = LoopState.PAUSED
        self._halt_dispatch = True
        self.clock.pause()
        logger.info("%s [LOOP] paused", LOG_TAG_DETERMINISTIC)

    def resume(self) -> None:
        if self.state != LoopState.PAUSED:
            logger.debug("[LOOP] resume() ignored in state %s", self.state.value)
            return
        self.state = LoopState.RUNNING
        self._halt_dispatch = False
        self.clock.resume()
        logger.info("%s [LOOP] resumed", LOG_TAG_DETERMINISTIC)

    async def stop(self) -> None:
        """Stop ticking; an in-flight tick finishes its current batch first."""
        if self.state == LoopState.STOPPED:
            logger.debug("[LOOP] stop() ignored, already stopped")
            return
        self.state = LoopState.STOPPED
        self._halt_dispatch = True
        await self.clock.stop()

        current = self._current_tick
        if current is not None and not current.done():
            await asyncio.wait({current}, timeout=self.config.agent_timeout_seconds)

        consumer, self._consumer = self._consumer, None
        if consumer is not None and not consumer.done():
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        await self.store.close()
        logger.info("%s [LOOP] stopped after %d ticks", LOG_TAG_DETERMINISTIC, self._tick_count)

    def set_speed(self, multiplier: float) -> None:
        self.clock.set_speed(multiplier)

    async def skip_time(self, minutes: float) -> TimeSkipped:
        """Jump the clock forward and fold every event due in the gap.

        Agents do not run for the skipped interval; they observe the folded
        events on the next tick.
        """
        skipped = self.clock.skip_time(minutes)
        applied = await self._apply_events(self.events.drain_due(skipped.simulated_time))
        if applied:
            logger.info("%s [LOOP] %d event(s) folded during skip", LOG_TAG_DETERMINISTIC, len(applied))
        return skipped

    async def run(self, num_ticks: int, *, tick: timedelta = timedelta(minutes=1)) -> List[TickResult]:
        """Process ``num_ticks`` ticks of ``tick`` simulated time each, back to back."""
        if self._consumer is not None:
            raise GenworldError("run() cannot be used while the loop is started; call stop() first")
        await self.store.initialize()
        self._halt_dispatch = False
        results: List[TickResult] = []
        try:
            for _ in range(num_ticks):
                results.append(await self.run_tick(self.clock.advance(tick)))
        finally:
            await self.store.close()
        return results

    # ------------------------------------------------------------------
    # Clock plumbing
    # ------------------------------------------------------------------

    def _on_clock_tick(self, signal: TickSignal) -> None:
        if self._consumer is None or self.state != LoopState.RUNNING:
            return
        try:
            self._queue.put_nowait(signal)
        except asyncio.QueueFull:
            self._dropped_ticks += 1
            logger.warning(
                "%s [LOOP] tick at %s dropped, previous tick still processing (%d dropped)",
                LOG_TAG_ERROR, signal.simulated_time.isoformat(), self._dropped_ticks,
            )

    def _on_time_skipped(self, event: TimeSkipped) -> None:
        self.world.update_time(event.simulated_time)

    async def _consume(self) -> None:
        while True:
            signal = await self._queue.get()
            self._current_tick = asyncio.ensure_future(self.run_tick(signal))
            try:
                await asyncio.shield(self._current_tick)
            except Exception:
                logger.exception("%s [LOOP] tick at %s failed", LOG_TAG_ERROR, signal.simulated_time.isoformat())
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_tick(self, signal: TickSignal) -> TickResult:
        started = time.perf_counter()
        self._tick_count += 1
        # A skip may already have moved world time past a queued signal.
        now = max(signal.simulated_time, self.world.current_time)

        self.world.update_time(now)
        applied = await self._apply_events(self.events.drain_due(now))
        await self.dialogues.end_out_of_range()

        snapshot = self.world.snapshot()
        processed, errors = await self._process_agents(snapshot)

        committed = self.world.snapshot()
        try:
            await self.store.save_world(committed)
        except StoreError as exc:
            logger.error("%s [LOOP] world %s not persisted this tick: %s", LOG_TAG_ERROR, committed.world_id, exc)

        duration_ms = (time.perf_counter() - started) * 1000.0
        self._durations.append(duration_ms)
        result = TickResult(
            tick=self._tick_count,
            simulated_time=now,
            processed=processed,
            errors=errors,
            events_applied=applied,
            version=committed.version,
            duration_ms=duration_ms,
        )
        self._last_result = result

        await self._notify(committed)
        logger.info(
            "%s [TICK] %d at %s: %d agents ok, %d failed, %d events (%.1f ms)",
            LOG_TAG_DETERMINISTIC, result.tick, now.isoformat(), processed, len(errors), len(applied), duration_ms,
        )
        return result

    async def _process_agents(self, snapshot: WorldState) -> Tuple[int, List[AgentError]]:
        agents = [a for a in snapshot.agents.values() if a.status == AgentStatus.ACTIVE]
        semaphore = asyncio.Semaphore(self.config.max_concurrent_agents)
        batch_size = self.config.batch_size
        processed = 0
        errors: List[AgentError] = []

        for offset in range(0, len(agents), batch_size):
            if self._halt_dispatch:
                logger.info("[LOOP] halting dispatch with %d agents left this tick", len(agents) - offset)
                break
            batch = agents[offset:offset + batch_size]
            outcomes = await asyncio.gather(*(self._run_agent(a.id, snapshot, semaphore) for a in batch))
            for outcome in outcomes:
                if outcome is None:
                    processed += 1
                else:
                    errors.append(outcome)
        return processed, errors

    async def _run_agent(
        self, agent_id: str, snapshot: WorldState, semaphore: asyncio.Semaphore
    ) -> Optional[AgentError]:
        async with semaphore:
            try:
                await asyncio.wait_for(
                    self.pipeline.run(agent_id, snapshot), timeout=self.config.agent_timeout_seconds
                )
                return None
            except asyncio.TimeoutError:
                error = AgentError(
                    agent_id=agent_id,
                    stage="timeout",
                    error_type="TimeoutError",
                    message=f"agent exceeded {self.config.agent_timeout_seconds}s",
                )
            except AgentProcessingError as exc:
                error = AgentError(
                    agent_id=agent_id,
                    stage=exc.stage,
                    error_type=type(exc.underlying).__name__,
                    message=str(exc.underlying),
                )
            except Exception as exc:
                error = AgentError(agent_id=agent_id, stage="pipeline", error_type=type(exc).__name__, message=str(exc))
        logger.error("%s [AGENT] %s failed at %s: %s: %s", LOG_TAG_ERROR, agent_id, error.stage, error.error_type,
                     error.message)
        return error

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _apply_events(self, due: List[ScheduledEvent]) -> List[str]:
        applied: List[str] = []
        for event in due:
            try:
                record = self._fold_event(event)
            except (GenworldError, KeyError, TypeError, ValueError) as exc:
                logger.warning("%s [EVENT] %s (%s) skipped: %s", LOG_TAG_ERROR, event.id, event.kind.value, exc)
                continue
            applied.append(event.id)
            if record is not None:
                try:
                    await self.store.save_world_event(self.world.world_id, record)
                except StoreError as exc:
                    logger.error("%s [EVENT] %s not persisted: %s", LOG_TAG_ERROR, event.id, exc)
        return applied

    def _fold_event(self, event: ScheduledEvent) -> Optional[WorldEventRecord]:
        """Apply one due event to world state; returns the observable record, if any."""
        payload = event.payload
        now = self.world.current_time

        if event.kind in (EventKind.WORLD_EVENT, EventKind.SCHEDULED):
            if "weather" in payload:
                self.world.update_weather(Weather(**payload["weather"]))
            if "effect" in payload:
                effect = payload["effect"]
                minutes = effect.get("duration_minutes")
                self.world.add_global_effect(
                    GlobalEffect(
                        description=effect["description"],
                        started_at=now,
                        expires_at=now + timedelta(minutes=minutes) if minutes else None,
                        area=effect.get("area"),
                    )
                )
            description = payload.get("description")
            if not description:
                return None
            record = WorldEventRecord(
                kind=event.kind,
                description=description,
                at=now,
                area=payload.get("area"),
                agent_ids=list(payload.get("agent_ids", [])),
            )
            self.world.record_event(record)
            return record

        if event.kind == EventKind.AGENT_ACTION:
            agent_id = payload.get("agent_id")
            agent = self.world.get_agent(agent_id) if agent_id else None
            if agent is None:
                raise WorldStateError(f"agent_action event targets unknown agent {agent_id!r}")
            fields: Dict[str, Any] = {}
            if payload.get("move_to"):
                area = self.world.snapshot().locations.get(payload["move_to"])
                fields["location"] = (
                    Location(x=area.x, y=area.y, area=area.name)
                    if area is not None
                    else Location(x=agent.location.x, y=agent.location.y, area=payload["move_to"])
                )
            if payload.get("action"):
                fields["current_action"] = payload["action"]
            if fields:
                self.world.patch_agent(agent_id, **fields)
            record = WorldEventRecord(
                kind=event.kind,
                description=payload.get("description") or f"{agent.name} was directed to {payload.get('action', 'act')}",
                at=now,
                area=fields["location"].area if "location" in fields else agent.location.area,
                agent_ids=[agent_id],
            )
            self.world.record_event(record)
            return record

        if event.kind == EventKind.USER_INTERVENTION:
            text = payload.get("message") or payload.get("description")
            if not text:
                raise ValueError("user_intervention needs a message")
            self.world.add_observation(payload.get("agent_id"), text)
            return None

        command = payload.get("command")
        if command == "pause":
            self.pause()
        elif command == "resume":
            self.resume()
        elif command == "set_speed":
            self.clock.set_speed(float(payload["multiplier"]))
        elif command == "skip_time":
            self.clock.skip_time(float(payload["minutes"]))
        else:
            raise ValueError(f"unknown system command {command!r}")
        return None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def notify(self) -> None:
        """Broadcast the current committed world outside the tick cycle."""
        await self._notify(self.world.snapshot())

    async def _notify(self, state: WorldState) -> None:
        notification = ChangeNotification(
            world_id=state.world_id,
            current_time=state.current_time,
            agents=list(state.agents.values()),
            version=state.version,
        )
        for listener in list(self._listeners):
            try:
                result = listener(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("%s [LOOP] change listener %r failed", LOG_TAG_ERROR, listener)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        durations = list(self._durations)
        return {
            "world_id": self.world.world_id,
            "state": self.state.value,
            "tick_count": self._tick_count,
            "dropped_ticks": self._dropped_ticks,
            "queued_ticks": self._queue.qsize(),
            "average_tick_ms": sum(durations) / len(durations) if durations else 0.0,
            "last_tick_ms": durations[-1] if durations else None,
            "last_errors": len(self._last_result.errors) if self._last_result else 0,
            "clock": self.clock.get_state().model_dump(),
            "events": self.events.stats(),
            "world": self.world.stats(),
            "cognition": self.cognition.stats(),
            "dialogues": self.dialogues.statistics(),
        }
