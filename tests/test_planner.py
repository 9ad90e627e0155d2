"""Tests for the hierarchical planner."""

from datetime import datetime, timedelta, timezone

import pytest

from genworld.cognition.context import build_prompt_context
from genworld.cognition.offline import OfflineCognitionService
from genworld.cognition.planner import (
    Planner,
    activity_for_time,
    is_salient,
    normalize_daily_plan,
    should_replan,
)
from genworld.cognition.service import DEFAULT_DAILY_PLAN, CognitionGateway
from genworld.memory import MemoryStream
from genworld.persistence import InMemoryStore
from genworld.schemas import Agent, Location, MemoryKind, PlanGranularity, WorldState

START = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


class BrokenPlans(OfflineCognitionService):
    async def generate_plan(self, granularity, context):
        raise RuntimeError("planner model offline")


def make_planner(service=None):
    clock = {"now": START}
    gateway = CognitionGateway(service or OfflineCognitionService(), backoff_seconds=0)
    memory = MemoryStream(InMemoryStore(), gateway, now_fn=lambda: clock["now"])
    planner = Planner(gateway, now_fn=lambda: clock["now"], memory=memory)
    agent = Agent(id="alice", world_id="w1", name="Alice", location=Location(area="cafe"), goals=["the novel"])
    world = WorldState(world_id="w1", current_time=START, agents={"alice": agent})
    context = build_prompt_context(agent, world)
    return planner, agent, context, memory, clock


def test_normalize_daily_plan_clamps_between_five_and_eight():
    padded = normalize_daily_plan(["Write", "Swim"])
    assert len(padded) == 5
    assert padded[:2] == ["Write", "Swim"]

    trimmed = normalize_daily_plan([f"Task {i}" for i in range(12)])
    assert len(trimmed) == 8


def test_activity_for_time_spreads_over_waking_hours():
    plan = list(DEFAULT_DAILY_PLAN)
    assert activity_for_time(plan, START.replace(hour=3)) == plan[0]
    assert activity_for_time(plan, START) == plan[1]
    assert activity_for_time(plan, START.replace(hour=23)) == plan[-1]
    assert activity_for_time([], START) is None


def test_salience_and_replan_words():
    assert is_salient("Something unexpected happened")
    assert not is_salient("The renewal went fine")
    assert should_replan("The road is blocked")
    assert not should_replan("Birds are singing")


@pytest.mark.asyncio
async def test_first_call_builds_all_three_levels():
    planner, agent, context, memory, _ = make_planner()

    refresh = await planner.ensure_current(agent, context)

    assert refresh.refreshed == [PlanGranularity.DAILY, PlanGranularity.HOURLY, PlanGranularity.MINUTE]
    assert 5 <= len(agent.plan.daily_plan) <= 8
    assert agent.plan.daily_plan[2] == "Work on the novel"
    assert agent.plan.active_activity == "Have breakfast"
    assert agent.plan.hourly_plan[1] == "Have breakfast"
    assert agent.plan.current_step == agent.plan.hourly_plan[0]

    plans = await memory.get("alice", kind=MemoryKind.PLAN)
    assert len(plans) == 1
    assert plans[0].content.startswith("My plan for today:")


@pytest.mark.asyncio
async def test_fresh_levels_are_not_regenerated():
    planner, agent, context, _, clock = make_planner()
    await planner.ensure_current(agent, context)

    assert (await planner.ensure_current(agent, context)).refreshed == []

    clock["now"] = START + timedelta(minutes=5)
    refresh = await planner.ensure_current(agent, context)
    assert refresh.refreshed == [PlanGranularity.MINUTE]
    assert agent.plan.current_step == agent.plan.hourly_plan[1]


@pytest.mark.asyncio
async def test_invalidate_forces_a_refresh():
    planner, agent, context, _, _ = make_planner()
    await planner.ensure_current(agent, context)

    planner.invalidate("alice", PlanGranularity.HOURLY)
    assert planner.generated_at("alice", PlanGranularity.HOURLY) is None
    refresh = await planner.ensure_current(agent, context)
    assert refresh.refreshed == [PlanGranularity.HOURLY, PlanGranularity.MINUTE]

    planner.invalidate("alice")
    refresh = await planner.ensure_current(agent, context)
    assert refresh.refreshed == [PlanGranularity.DAILY, PlanGranularity.HOURLY, PlanGranularity.MINUTE]


@pytest.mark.asyncio
async def test_new_daily_activity_cascades_to_finer_levels():
    planner, agent, context, _, clock = make_planner()
    await planner.ensure_current(agent, context)

    clock["now"] = START + timedelta(hours=2)
    refresh = await planner.ensure_current(agent, context)

    assert refresh.refreshed == [PlanGranularity.HOURLY, PlanGranularity.MINUTE]
    assert agent.plan.active_activity == "Work on the novel"
    assert agent.plan.hourly_plan[1] == "Work on the novel"


@pytest.mark.asyncio
async def test_invalidating_observation_replans_hourly():
    planner, agent, context, _, _ = make_planner()
    await planner.ensure_current(agent, context)

    assert await planner.replan_if_needed(agent, "Birds are singing", context) is False

    observation = "An unexpected storm blocked the road"
    assert await planner.replan_if_needed(agent, observation, context) is True
    assert agent.plan.hourly_plan[0] == f"Deal with what just happened: {observation}"
    assert agent.plan.current_step == agent.plan.hourly_plan[0]
    assert "replan_trigger" not in context.extra


@pytest.mark.asyncio
async def test_failed_generation_uses_default_day():
    planner, agent, context, _, _ = make_planner(BrokenPlans())

    await planner.ensure_current(agent, context)

    assert agent.plan.daily_plan == DEFAULT_DAILY_PLAN
    assert agent.plan.hourly_plan == ["Have breakfast"]
    assert agent.plan.current_step == "Have breakfast"
