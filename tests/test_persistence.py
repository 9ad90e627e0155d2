"""Tests for the in-memory store and the retrying store wrapper."""

from datetime import datetime, timedelta, timezone

import pytest

from genworld.errors import StoreUnavailableError, TransientStoreError
from genworld.persistence import InMemoryStore, RetryingStore
from genworld.schemas import (
    Agent,
    AgentStatus,
    Dialogue,
    EventKind,
    Location,
    MemoryKind,
    MemoryRecord,
    WorldEventRecord,
    WorldState,
)

START = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


def make_memory(content: str, minutes: int, agent_id: str = "alice") -> MemoryRecord:
    at = START + timedelta(minutes=minutes)
    return MemoryRecord(
        agent_id=agent_id,
        world_id="w1",
        kind=MemoryKind.OBSERVATION,
        content=content,
        created_at=at,
        last_accessed_at=at,
        importance=5,
    )


@pytest.mark.asyncio
async def test_in_memory_store_round_trip():
    store = InMemoryStore()
    await store.initialize()

    state = WorldState(world_id="w1", current_time=START, version=3)
    await store.save_world(state)
    assert await store.load_world("w1") == state

    # Older versions never overwrite newer ones
    await store.save_world(state.model_copy(update={"version": 2}))
    assert (await store.load_world("w1")).version == 3

    alice = Agent(id="alice", world_id="w1", name="Alice", location=Location(area="cafe"))
    gone = Agent(id="gone", world_id="w1", name="Gone", location=Location(area="cafe"), status=AgentStatus.DELETED)
    await store.save_agent(alice)
    await store.save_agent(gone)
    assert [a.id for a in await store.list_agents("w1", AgentStatus.ACTIVE)] == ["alice"]
    assert len(await store.list_agents("w1")) == 2

    record = WorldEventRecord(kind=EventKind.WORLD_EVENT, description="Rain starts", at=START)
    await store.save_world_event("w1", record)
    assert [r.description for r in await store.list_world_events("w1")] == ["Rain starts"]

    dialogue = Dialogue(participant_ids=["alice", "bob"], world_id="w1", location="cafe", started_at=START)
    await store.save_dialogue(dialogue)
    assert (await store.get_dialogue(dialogue.id)).participant_ids == ["alice", "bob"]
    assert len(await store.list_dialogues("w1")) == 1

    await store.close()
    # Data survives close for post-run reads
    assert await store.get_agent("alice") is not None


@pytest.mark.asyncio
async def test_memories_are_filtered_by_agent_and_time():
    store = InMemoryStore()
    for memory in (make_memory("late", 30), make_memory("early", 0), make_memory("other", 10, agent_id="bob")):
        await store.save_memory(memory)

    everything = await store.list_memories("alice")
    assert [m.content for m in everything] == ["early", "late"]

    recent = await store.list_memories("alice", since=START + timedelta(minutes=15))
    assert [m.content for m in recent] == ["late"]


@pytest.mark.asyncio
async def test_store_returns_copies():
    store = InMemoryStore()
    memory = make_memory("original", 0)
    await store.save_memory(memory)

    fetched = await store.get_memory(memory.id)
    fetched.content = "changed"

    assert (await store.get_memory(memory.id)).content == "original"


class FlakyStore(InMemoryStore):
    """Fails the first ``failures`` agent saves with a transient error."""

    def __init__(self, failures: int, error: Exception = None) -> None:
        super().__init__()
        self.failures = failures
        self.error = error or TransientStoreError("connection reset")
        self.calls = 0

    async def save_agent(self, agent: Agent) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        await super().save_agent(agent)


@pytest.mark.asyncio
async def test_retrying_store_recovers_from_transient_errors():
    inner = FlakyStore(failures=2)
    store = RetryingStore(inner, max_attempts=3, backoff_seconds=0, timeout_seconds=1)
    agent = Agent(id="alice", world_id="w1", name="Alice", location=Location(area="cafe"))

    await store.save_agent(agent)

    assert inner.calls == 3
    assert await store.get_agent("alice") is not None


@pytest.mark.asyncio
async def test_retrying_store_gives_up_after_max_attempts():
    inner = FlakyStore(failures=10)
    store = RetryingStore(inner, max_attempts=3, backoff_seconds=0, timeout_seconds=1)
    agent = Agent(id="alice", world_id="w1", name="Alice", location=Location(area="cafe"))

    with pytest.raises(StoreUnavailableError) as excinfo:
        await store.save_agent(agent)

    assert inner.calls == 3
    assert excinfo.value.operation == "save_agent"
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.underlying, TransientStoreError)


@pytest.mark.asyncio
async def test_retrying_store_does_not_retry_permanent_errors():
    inner = FlakyStore(failures=10, error=ValueError("bad record"))
    store = RetryingStore(inner, max_attempts=3, backoff_seconds=0, timeout_seconds=1)
    agent = Agent(id="alice", world_id="w1", name="Alice", location=Location(area="cafe"))

    with pytest.raises(ValueError):
        await store.save_agent(agent)
    assert inner.calls == 1
