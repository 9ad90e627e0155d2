"""Integration tests for the simulation loop."""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from genworld.cognition.offline import OfflineCognitionService
from genworld.cognition.service import CognitionGateway
from genworld.config import SimulationConfig
from genworld.errors import GenworldError, StoreUnavailableError
from genworld.orchestrator import LoopState, SimulationLoop
from genworld.persistence import InMemoryStore
from genworld.schemas import (
    Agent,
    AgentStatus,
    Area,
    EventKind,
    EventPriority,
    Location,
    MemoryKind,
    TickSignal,
    WorldState,
)
from genworld.world_state import WorldStateManager

START = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


class FailingMemoryStore(InMemoryStore):
    """Rejects every memory written for one agent."""

    def __init__(self, broken_agent: str) -> None:
        super().__init__()
        self.broken_agent = broken_agent

    async def save_memory(self, memory):
        if memory.agent_id == self.broken_agent:
            raise ValueError("disk full")
        await super().save_memory(memory)


class FlakyDialogueStore(InMemoryStore):
    """Stops persisting dialogues once ``down`` is set."""

    down = False

    async def save_dialogue(self, dialogue):
        if self.down:
            raise StoreUnavailableError(operation="save_dialogue", attempts=2, underlying=ConnectionError("db down"))
        await super().save_dialogue(dialogue)


def make_world(agent_specs):
    state = WorldState(
        world_id="w1",
        current_time=START,
        locations={"cafe": Area(name="cafe"), "park": Area(name="park", x=500)},
    )
    world = WorldStateManager(state)
    for agent_id, area in agent_specs:
        world.put_agent(Agent(id=agent_id, world_id="w1", name=agent_id.title(), location=Location(area=area)))
    return world


def make_loop(world, store=None, **config):
    settings = SimulationConfig(**config)
    return SimulationLoop(
        world,
        cognition=CognitionGateway(OfflineCognitionService(), backoff_seconds=0),
        store=store or InMemoryStore(),
        config=settings,
        rng=random.Random(3),
    )


@pytest.mark.asyncio
async def test_run_processes_every_agent_each_tick():
    world = make_world([("alice", "cafe"), ("bob", "park")])
    loop = make_loop(world)
    start_version = world.version

    results = await loop.run(3)

    assert [r.tick for r in results] == [1, 2, 3]
    assert all(r.processed == 2 and r.healthy for r in results)
    assert results[-1].simulated_time == START + timedelta(minutes=3)
    assert world.current_time == START + timedelta(minutes=3)
    assert results[-1].version > start_version
    assert world.get_agent("alice").plan.current_step is not None
    assert world.get_agent("alice").current_action is not None

    saved = await loop.store.load_world("w1")
    assert saved.version == world.version


@pytest.mark.asyncio
async def test_agents_are_added_removed_and_loaded_through_the_store():
    store = InMemoryStore()
    loop = make_loop(make_world([]), store=store)

    await loop.add_agent(Agent(id="alice", world_id="w1", name="Alice", location=Location(area="cafe")))
    await loop.add_agent(Agent(id="bob", world_id="w1", name="Bob", location=Location(area="park")))
    await loop.remove_agent("bob")

    assert (await store.get_agent("bob")).status == AgentStatus.DELETED
    assert [a.id for a in loop.world.active_agents()] == ["alice"]

    fresh = make_loop(make_world([]), store=store)
    assert await fresh.load_agents() == 1
    assert fresh.world.get_agent("alice").name == "Alice"
    assert fresh.world.get_agent("bob") is None


@pytest.mark.asyncio
async def test_one_failing_agent_does_not_affect_the_batch():
    specs = [(f"agent-{i}", f"area-{i}") for i in range(10)]
    world = make_world(specs)
    loop = make_loop(world, store=FailingMemoryStore("agent-3"), batch_size=4)

    result = (await loop.run(1))[0]

    assert result.processed == 9
    assert len(result.errors) == 1
    error = result.errors[0]
    assert error.agent_id == "agent-3"
    assert error.stage == "remember"
    assert error.error_type == "ValueError"
    assert world.get_agent("agent-3").current_action is None
    assert world.get_agent("agent-4").current_action is not None


@pytest.mark.asyncio
async def test_dialogue_cleanup_survives_an_unavailable_store():
    world = make_world([("alice", "cafe"), ("bob", "cafe")])
    store = FlakyDialogueStore()
    loop = make_loop(world, store=store)
    dialogue = await loop.dialogues.initiate("alice", "bob")
    world.patch_agent("bob", location=Location(x=500, area="park"))
    store.down = True

    result = (await loop.run(1))[0]

    assert result.processed == 2
    assert result.healthy
    assert loop.dialogues.get(dialogue.id).end_reason == "lost proximity"
    assert world.snapshot().active_dialogues == {}
    assert not loop.dialogues.in_dialogue("alice")


@pytest.mark.asyncio
async def test_events_are_folded_before_agents_run():
    world = make_world([("alice", "cafe")])
    loop = make_loop(world)
    event_id = loop.events.schedule(
        EventKind.WORLD_EVENT,
        {"weather": {"condition": "storm", "temperature": 5}, "description": "Thunder shakes the windows"},
        due_at=START + timedelta(seconds=30),
        priority=EventPriority.HIGH,
    )

    result = (await loop.run(1))[0]

    assert result.events_applied == [event_id]
    assert world.snapshot().weather.condition == "storm"
    observed = {m.content for m in await loop.memory.get("alice", kind=MemoryKind.OBSERVATION)}
    assert "Thunder shakes the windows" in observed
    assert any("storm and 5 degrees" in text for text in observed)
    assert [r.description for r in await loop.store.list_world_events("w1")] == ["Thunder shakes the windows"]


@pytest.mark.asyncio
async def test_naive_due_time_does_not_break_later_ticks():
    world = make_world([("alice", "cafe")])
    loop = make_loop(world)
    event_id = loop.events.schedule(
        EventKind.WORLD_EVENT, {"description": "A cart rattles past"}, due_at=datetime(2024, 1, 1, 8, 0, 30)
    )

    results = await loop.run(2)

    assert results[0].events_applied == [event_id]
    assert all(r.healthy and r.processed == 1 for r in results)
    assert len(loop.events) == 0


@pytest.mark.asyncio
async def test_user_intervention_reaches_only_its_target():
    world = make_world([("alice", "cafe"), ("bob", "park")])
    loop = make_loop(world)
    loop.events.schedule(
        EventKind.USER_INTERVENTION,
        {"agent_id": "alice", "message": "You hear a knock at the door"},
        due_at=START,
    )

    await loop.run(1)

    alice = {m.content for m in await loop.memory.get("alice")}
    bob = {m.content for m in await loop.memory.get("bob")}
    assert "You hear a knock at the door" in alice
    assert "You hear a knock at the door" not in bob


@pytest.mark.asyncio
async def test_agent_action_and_system_events():
    world = make_world([("alice", "cafe")])
    loop = make_loop(world)
    loop.events.schedule(
        EventKind.AGENT_ACTION,
        {"agent_id": "alice", "move_to": "park", "action": "jogging"},
        due_at=START,
    )
    loop.events.schedule(EventKind.SYSTEM, {"command": "set_speed", "multiplier": 120}, due_at=START)
    bad = loop.events.schedule(EventKind.AGENT_ACTION, {"agent_id": "ghost", "action": "haunting"}, due_at=START)

    result = (await loop.run(1))[0]

    assert bad not in result.events_applied
    assert len(result.events_applied) == 2
    assert world.get_agent("alice").location.area == "park"
    assert world.get_agent("alice").location.x == 500
    assert loop.clock.multiplier == 120


@pytest.mark.asyncio
async def test_listeners_receive_committed_versions():
    world = make_world([("alice", "cafe")])
    loop = make_loop(world)
    sync_seen = []
    async_listener = AsyncMock()

    def broken_listener(notification):
        raise RuntimeError("listener bug")

    loop.add_listener(sync_seen.append)
    loop.add_listener(broken_listener)
    loop.add_listener(async_listener)

    await loop.run(2)

    assert len(sync_seen) == 2
    assert async_listener.await_count == 2
    assert async_listener.await_args.args[0].version == sync_seen[-1].version
    assert sync_seen[0].version < sync_seen[1].version
    assert sync_seen[0].agents[0].id == "alice"

    loop.remove_listener(async_listener)
    await loop.notify()
    assert async_listener.await_count == 2
    assert sync_seen[-1].version == world.version


@pytest.mark.asyncio
async def test_ticks_are_dropped_while_one_is_queued():
    world = make_world([("alice", "cafe")])
    loop = make_loop(world)
    loop.state = LoopState.RUNNING
    loop._consumer = asyncio.get_running_loop().create_future()

    for minutes in (1, 2, 3):
        loop._on_clock_tick(
            TickSignal(
                simulated_time=START + timedelta(minutes=minutes),
                ticks_elapsed=minutes,
                delta_simulated=timedelta(minutes=1),
            )
        )

    assert loop.get_status()["dropped_ticks"] == 2
    assert loop._queue.qsize() == 1
    loop._consumer.cancel()


@pytest.mark.asyncio
async def test_skip_time_moves_world_time():
    world = make_world([("alice", "cafe")])
    loop = make_loop(world)
    loop.events.schedule(
        EventKind.WORLD_EVENT, {"description": "The bakery opens"}, due_at=START + timedelta(minutes=45)
    )

    skipped = await loop.skip_time(90)

    assert skipped.previous_time == START
    assert world.current_time == START + timedelta(minutes=90)
    assert [e.description for e in world.snapshot().recent_events] == ["The bakery opens"]
    assert len(loop.events) == 0

    result = (await loop.run(1))[0]
    assert result.simulated_time == START + timedelta(minutes=91)
    assert result.events_applied == []
    observed = {m.content for m in await loop.memory.get("alice", kind=MemoryKind.OBSERVATION)}
    assert "The bakery opens" in observed


@pytest.mark.asyncio
async def test_start_and_stop_with_the_wall_clock():
    world = make_world([("alice", "cafe")])
    loop = make_loop(world, tick_rate_hz=20, multiplier=60)

    await loop.start()
    await loop.start()
    assert loop.state == LoopState.RUNNING
    with pytest.raises(GenworldError):
        await loop.run(1)

    await asyncio.sleep(0.3)
    loop.pause()
    assert loop.get_status()["state"] == "paused"
    loop.resume()
    await asyncio.sleep(0.1)
    await loop.stop()
    await loop.stop()

    status = loop.get_status()
    assert status["state"] == "stopped"
    assert status["tick_count"] >= 1
    assert world.current_time > START
