"""Tests for memory scoring, retrieval and bookkeeping."""

from datetime import datetime, timedelta, timezone

import pytest

from genworld.cognition.offline import OfflineCognitionService
from genworld.cognition.service import CognitionGateway
from genworld.memory import MemoryStream, RetrievalWeights, cosine_similarity, recency_score
from genworld.persistence import InMemoryStore
from genworld.schemas import MemoryKind, MemoryRecord

START = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


class SimClock:
    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> datetime:
        return self.now


def make_stream(service=None, **kwargs):
    clock = SimClock()
    store = InMemoryStore()
    gateway = CognitionGateway(service or OfflineCognitionService(), backoff_seconds=0, max_attempts=2)
    return MemoryStream(store, gateway, now_fn=clock, **kwargs), store, clock


def record(content: str, *, importance: int = 5, at: datetime = START, kind=MemoryKind.OBSERVATION, **extra):
    return MemoryRecord(
        agent_id="alice",
        world_id="w1",
        kind=kind,
        content=content,
        created_at=at,
        last_accessed_at=at,
        importance=importance,
        **extra,
    )


def test_recency_halves_every_half_life():
    assert recency_score(START, START) == pytest.approx(1.0)
    assert recency_score(START - timedelta(hours=24), START) == pytest.approx(0.5)
    assert recency_score(START - timedelta(hours=48), START) == pytest.approx(0.25)
    # Future timestamps never score above 1
    assert recency_score(START + timedelta(hours=1), START) == pytest.approx(1.0)


def test_cosine_similarity_edge_cases():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0
    assert cosine_similarity(None, [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


@pytest.mark.asyncio
async def test_importance_outranks_equal_memories():
    stream, _, _ = make_stream()
    await stream.append(record("Walked past the bakery", importance=2), embed=False)
    await stream.append(record("Walked past the bakery", importance=9), embed=False)

    results = await stream.retrieve_relevant("alice", "anything")

    assert [r.memory.importance for r in results] == [9, 2]
    assert results[0].score > results[1].score


@pytest.mark.asyncio
async def test_recently_accessed_memories_rank_higher():
    stream, _, clock = make_stream()
    await stream.append(record("Old news", at=START - timedelta(hours=48)), embed=False)
    await stream.append(record("Fresh news", at=START), embed=False)

    results = await stream.retrieve_relevant("alice", "news")

    assert [r.memory.content for r in results] == ["Fresh news", "Old news"]
    assert results[0].recency == pytest.approx(1.0)
    assert results[1].recency == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_relevance_breaks_ties_between_equal_memories():
    stream, _, _ = make_stream()
    await stream.append(record("Fixing the bicycle chain"))
    await stream.append(record("Coffee at the cafe"))

    results = await stream.retrieve_relevant("alice", "coffee cafe")

    assert results[0].memory.content == "Coffee at the cafe"
    assert results[0].relevance > results[1].relevance


@pytest.mark.asyncio
async def test_retrieval_touches_returned_memories():
    stream, store, clock = make_stream()
    first = await stream.append(record("Saw a heron"), embed=False)
    second = await stream.append(record("Heard a bell", importance=1), embed=False)

    clock.now = START + timedelta(hours=6)
    results = await stream.retrieve_relevant("alice", "birds", top_n=1)

    assert [r.memory.id for r in results] == [first.id]
    assert (await store.get_memory(first.id)).last_accessed_at == clock.now
    assert (await store.get_memory(second.id)).last_accessed_at == START


@pytest.mark.asyncio
async def test_retrieval_of_nothing():
    stream, _, _ = make_stream()
    assert await stream.retrieve_relevant("alice", "anything") == []

    await stream.append(record("Something"), embed=False)
    assert await stream.retrieve_relevant("alice", "anything", top_n=0) == []


@pytest.mark.asyncio
async def test_weights_change_the_ranking():
    stream, _, _ = make_stream(weights=RetrievalWeights(relevance=0.0, recency=10.0, importance=0.0))
    await stream.append(record("Important but old", importance=10, at=START - timedelta(hours=24)), embed=False)
    await stream.append(record("Trivial but fresh", importance=1), embed=False)

    results = await stream.retrieve_relevant("alice", "anything")

    assert results[0].memory.content == "Trivial but fresh"


@pytest.mark.asyncio
async def test_remember_scores_importance_and_embeds():
    stream, _, _ = make_stream()

    memory = await stream.remember("alice", "w1", "There was a fire at the market")

    assert memory.importance == 7
    assert memory.embedding is not None and len(memory.embedding) == 64
    assert memory.created_at == START


class BrokenEmbeddings(OfflineCognitionService):
    async def embed(self, text):
        raise ValueError("embedding backend down")


@pytest.mark.asyncio
async def test_memory_is_kept_without_embedding_when_embedding_fails():
    stream, store, _ = make_stream(service=BrokenEmbeddings())

    memory = await stream.remember("alice", "w1", "Quiet afternoon", importance=2)

    assert memory.embedding is None
    assert (await store.get_memory(memory.id)) is not None
    assert stream.cognition.stats()["embed"] == {"calls": 1, "fallbacks": 1}


@pytest.mark.asyncio
async def test_get_filters_newest_first():
    stream, _, clock = make_stream()
    await stream.append(record("plan", kind=MemoryKind.PLAN, importance=5, at=START), embed=False)
    await stream.append(
        record("tagged", importance=8, at=START + timedelta(minutes=1), tags=["work", "urgent"]), embed=False
    )
    await stream.append(record("minor", importance=2, at=START + timedelta(minutes=2)), embed=False)
    clock.now = START + timedelta(hours=2)

    assert [m.content for m in await stream.get("alice")] == ["minor", "tagged", "plan"]
    assert [m.content for m in await stream.get("alice", kind=MemoryKind.PLAN)] == ["plan"]
    assert [m.content for m in await stream.get("alice", min_importance=5)] == ["tagged", "plan"]
    assert [m.content for m in await stream.get("alice", tags=["work"])] == ["tagged"]
    assert [m.content for m in await stream.get("alice", limit=1)] == ["minor"]
    assert await stream.get("alice", max_age_hours=1) == []


@pytest.mark.asyncio
async def test_memory_chain_walks_relations_breadth_first():
    stream, _, _ = make_stream()
    leaf = await stream.append(record("leaf"), embed=False)
    middle = await stream.append(record("middle", related_memory_ids=[leaf.id]), embed=False)
    root = await stream.append(record("root"), embed=False)
    await stream.link(root.id, [middle.id, root.id, middle.id])

    chain = await stream.memory_chain(root.id)
    assert [m.content for m in chain] == ["root", "middle", "leaf"]
    assert (await stream.store.get_memory(root.id)).related_memory_ids == [middle.id]

    assert [m.content for m in await stream.memory_chain(root.id, depth=1)] == ["root", "middle"]
    assert await stream.memory_chain("missing") == []


@pytest.mark.asyncio
async def test_statistics():
    stream, _, _ = make_stream()
    assert (await stream.statistics("alice"))["total"] == 0

    await stream.append(record("a", importance=4), embed=False)
    await stream.append(record("b", importance=8, kind=MemoryKind.ACTION), embed=False)

    stats = await stream.statistics("alice")
    assert stats["total"] == 2
    assert stats["by_kind"] == {"observation": 1, "action": 1}
    assert stats["average_importance"] == pytest.approx(6.0)
