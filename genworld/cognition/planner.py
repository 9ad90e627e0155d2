"""Hierarchical planner (daily -> hourly -> immediate step).

Daily plans hold 5-8 broad activities. The activity active at the current
simulated hour is decomposed into an hourly plan, and the minute level yields
the single ``current_step`` the action step consumes. Each level is cached for
a span proportional to its granularity (``PlanCadence``) so the Cognition
Service is only asked when a level is stale.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

from genworld.logging_utils import LOG_TAG_LLM, get_logger
from genworld.schemas import Agent, AgentPlan, MemoryKind, PlanGranularity

from .context import PromptContext
from .service import DEFAULT_DAILY_PLAN, DEFAULT_MINUTE_STEP, CognitionGateway

if TYPE_CHECKING:
    from genworld.memory import MemoryStream

logger = get_logger("cognition.planner")

MIN_DAILY_ACTIVITIES = 5
MAX_DAILY_ACTIVITIES = 8

# Waking hours the daily plan is spread across.
DAY_START_HOUR = 6
DAY_END_HOUR = 22

# Words that make an observation worth a replanning check.
REPLAN_MARKERS = ("unexpected", "changed", "new")

# Words that make a checked observation actually invalidate the hourly plan.
REPLAN_TRIGGERS = (
    "unexpected", "blocked", "interrupted", "emergency", "urgent", "changed",
    "cancelled", "unavailable", "conflict", "problem", "new",
)


def _contains_word(text: str, words: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(re.search(rf"\b{re.escape(word)}\b", lowered) for word in words)


def is_salient(observation: str) -> bool:
    """True when an observation hints at unexpected change."""
    return _contains_word(observation, REPLAN_MARKERS)


def should_replan(observation: str) -> bool:
    return _contains_word(observation, REPLAN_TRIGGERS)


@dataclass(frozen=True)
class PlanCadence:
    """How long each plan level stays fresh, in simulated time."""

    daily: timedelta = timedelta(hours=24)
    hourly: timedelta = timedelta(hours=1)
    minute: timedelta = timedelta(minutes=5)

    def ttl(self, granularity: PlanGranularity) -> timedelta:
        return {
            PlanGranularity.DAILY: self.daily,
            PlanGranularity.HOURLY: self.hourly,
            PlanGranularity.MINUTE: self.minute,
        }[granularity]

    def is_stale(self, granularity: PlanGranularity, generated_at: Optional[datetime], now: datetime) -> bool:
        if generated_at is None:
            return True
        return now - generated_at >= self.ttl(granularity)


def normalize_daily_plan(items: Sequence[str]) -> List[str]:
    """Clamp a daily plan to 5-8 activities, padding from the default day."""
    activities = [item for item in items if item][:MAX_DAILY_ACTIVITIES]
    for default in DEFAULT_DAILY_PLAN:
        if len(activities) >= MIN_DAILY_ACTIVITIES:
            break
        if default not in activities:
            activities.append(default)
    return activities


def activity_for_time(daily_plan: Sequence[str], now: datetime) -> Optional[str]:
    """Daily activity scheduled for ``now`` when the plan spans the waking day."""
    if not daily_plan:
        return None
    span = (DAY_END_HOUR - DAY_START_HOUR) / len(daily_plan)
    hour = now.hour + now.minute / 60.0
    index = int((hour - DAY_START_HOUR) // span)
    return daily_plan[max(0, min(len(daily_plan) - 1, index))]


@dataclass
class PlanRefresh:
    agent_id: str
    refreshed: List[PlanGranularity] = field(default_factory=list)
    replanned: bool = False


class Planner:
    """Generates and refreshes an agent's three-level plan.

    The planner mutates the ``Agent`` it is given; the simulation pipeline
    passes its private working copy and commits it at the end of the tick.
    """

    def __init__(
        self,
        cognition: CognitionGateway,
        *,
        now_fn: Callable[[], datetime],
        memory: Optional["MemoryStream"] = None,
        cadence: PlanCadence = PlanCadence(),
    ) -> None:
        self.cognition = cognition
        self.now_fn = now_fn
        self.memory = memory
        self.cadence = cadence
        self._generated_at: Dict[Tuple[str, PlanGranularity], datetime] = {}

    def generated_at(self, agent_id: str, granularity: PlanGranularity) -> Optional[datetime]:
        return self._generated_at.get((agent_id, granularity))

    def invalidate(self, agent_id: str, granularity: Optional[PlanGranularity] = None) -> None:
        for level in [granularity] if granularity else list(PlanGranularity):
            self._generated_at.pop((agent_id, level), None)

    async def generate(self, agent: Agent, granularity: PlanGranularity, context: PromptContext) -> AgentPlan:
        plan = agent.plan
        now = self.now_fn()

        if granularity == PlanGranularity.DAILY:
            outcome = await self.cognition.generate_plan(granularity, context, fallback=DEFAULT_DAILY_PLAN)
            plan.daily_plan = normalize_daily_plan(outcome.value.items)
            plan.active_activity = activity_for_time(plan.daily_plan, now)
            if self.memory is not None:
                await self.memory.remember(
                    agent.id,
                    agent.world_id,
                    "My plan for today: " + "; ".join(plan.daily_plan),
                    kind=MemoryKind.PLAN,
                    importance=5,
                    tags=["plan", "daily"],
                )

        elif granularity == PlanGranularity.HOURLY:
            if plan.active_activity is None:
                plan.active_activity = activity_for_time(plan.daily_plan, now) or DEFAULT_MINUTE_STEP
            outcome = await self.cognition.generate_plan(granularity, context, fallback=[plan.active_activity])
            plan.hourly_plan = list(outcome.value.items)

        else:
            default_step = plan.hourly_plan[0] if plan.hourly_plan else DEFAULT_MINUTE_STEP
            outcome = await self.cognition.generate_plan(granularity, context, fallback=[default_step])
            plan.current_step = outcome.value.items[0]

        self._generated_at[(agent.id, granularity)] = now
        logger.debug("%s [PLAN] %s %s plan ready%s", LOG_TAG_LLM, agent.id, granularity.value,
                     "" if outcome.ok else " (fallback)")
        return plan

    async def ensure_current(self, agent: Agent, context: PromptContext) -> PlanRefresh:
        """Regenerate whichever plan levels are missing or stale.

        A refreshed level forces every finer level to refresh too, and the
        hourly plan also refreshes when the clock moves into a new daily
        activity.
        """
        refresh = PlanRefresh(agent_id=agent.id)
        now = self.now_fn()
        plan = agent.plan
        cascade = False

        if not plan.daily_plan or self.cadence.is_stale(
            PlanGranularity.DAILY, self.generated_at(agent.id, PlanGranularity.DAILY), now
        ):
            await self.generate(agent, PlanGranularity.DAILY, context)
            refresh.refreshed.append(PlanGranularity.DAILY)
            cascade = True

        scheduled = activity_for_time(plan.daily_plan, now)
        if scheduled != plan.active_activity:
            plan.active_activity = scheduled
            cascade = True

        if cascade or not plan.hourly_plan or self.cadence.is_stale(
            PlanGranularity.HOURLY, self.generated_at(agent.id, PlanGranularity.HOURLY), now
        ):
            await self.generate(agent, PlanGranularity.HOURLY, context)
            refresh.refreshed.append(PlanGranularity.HOURLY)
            cascade = True

        if cascade or not plan.current_step or self.cadence.is_stale(
            PlanGranularity.MINUTE, self.generated_at(agent.id, PlanGranularity.MINUTE), now
        ):
            await self.generate(agent, PlanGranularity.MINUTE, context)
            refresh.refreshed.append(PlanGranularity.MINUTE)

        return refresh

    async def replan_if_needed(self, agent: Agent, observation: str, context: PromptContext) -> bool:
        """Discard the rest of the hourly plan when ``observation`` invalidates it."""
        if not should_replan(observation):
            return False

        logger.info("%s [PLAN] %s replanning after: %s", LOG_TAG_LLM, agent.id, observation)
        agent.plan.hourly_plan = []
        agent.plan.current_step = None
        context.extra["replan_trigger"] = observation
        try:
            await self.generate(agent, PlanGranularity.HOURLY, context)
            await self.generate(agent, PlanGranularity.MINUTE, context)
        finally:
            context.extra.pop("replan_trigger", None)
        return True
