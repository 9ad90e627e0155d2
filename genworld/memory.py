"""
Agent memory stream and retrieval scoring.

Each agent owns an append-only log of ``MemoryRecord`` entries (observations,
actions, plans, dialogue lines, reflections). Retrieval ranks candidates by

    score = a * relevance + b * recency + c * importance

where relevance is the cosine similarity between the query embedding and the
memory embedding (0 when either is missing), recency decays exponentially with
the hours since the memory was last accessed (24h half-life by default) and
importance is the raw 1-10 rating. Importance is deliberately not normalised:
a very important memory can outrank a merely relevant one.

Retrieval is not read-only. Every returned memory has ``last_accessed_at``
moved to the current simulated time, which resets its recency decay.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .cognition.context import PromptContext
from .cognition.service import CognitionGateway
from .logging_utils import LOG_TAG_DETERMINISTIC, get_logger
from .persistence import StoreStrategy
from .schemas import MemoryKind, MemoryRecord, ScoredMemory

logger = get_logger("memory")

DEFAULT_TOP_N = 20
DEFAULT_HALF_LIFE_HOURS = 24.0
DEFAULT_CHAIN_DEPTH = 3


@dataclass(frozen=True)
class RetrievalWeights:
    relevance: float = 1.0
    recency: float = 1.0
    importance: float = 1.0


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def recency_score(last_accessed_at: datetime, now: datetime, half_life_hours: float = DEFAULT_HALF_LIFE_HOURS) -> float:
    """``exp(-ln2 / half_life * hours_since_access)``; 1.0 for future or equal timestamps."""
    hours = max(0.0, (now - last_accessed_at).total_seconds() / 3600.0)
    return math.exp(-(math.log(2) / half_life_hours) * hours)


def score_memory(
    memory: MemoryRecord,
    query_embedding: Optional[Sequence[float]],
    now: datetime,
    *,
    weights: RetrievalWeights = RetrievalWeights(),
    half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
) -> ScoredMemory:
    relevance = cosine_similarity(query_embedding, memory.embedding)
    recency = recency_score(memory.last_accessed_at, now, half_life_hours)
    importance = float(memory.importance)
    score = weights.relevance * relevance + weights.recency * recency + weights.importance * importance
    return ScoredMemory(memory=memory, score=score, relevance=relevance, recency=recency, importance=importance)


def rank_memories(scored: Iterable[ScoredMemory]) -> List[ScoredMemory]:
    """Sort by score descending, breaking ties by more recent access."""
    return sorted(scored, key=lambda s: (s.score, s.memory.last_accessed_at), reverse=True)


KindFilter = Union[MemoryKind, Sequence[MemoryKind], None]


def _kinds(kind: KindFilter) -> Optional[set]:
    if kind is None:
        return None
    if isinstance(kind, MemoryKind):
        return {kind}
    return set(kind)


class MemoryStream:
    """Per-agent memory log backed by the persistent store.

    Parameters
    ----------
    store:
        Store collaborator (usually wrapped in ``RetryingStore``).
    cognition:
        Gateway used for embeddings and importance scoring.
    now_fn:
        Returns the current simulated time (normally ``clock.now``).
    """

    def __init__(
        self,
        store: StoreStrategy,
        cognition: CognitionGateway,
        *,
        now_fn: Callable[[], datetime],
        weights: RetrievalWeights = RetrievalWeights(),
        half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
        default_top_n: int = DEFAULT_TOP_N,
    ) -> None:
        self.store = store
        self.cognition = cognition
        self.now_fn = now_fn
        self.weights = weights
        self.half_life_hours = half_life_hours
        self.default_top_n = default_top_n

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, record: MemoryRecord, *, embed: bool = True) -> MemoryRecord:
        """Persist a fully-formed record, embedding its content if needed."""
        if embed and record.embedding is None:
            outcome = await self.cognition.embed(record.content)
            if outcome.value is not None:
                record = record.model_copy(update={"embedding": outcome.value})
        await self.store.save_memory(record)
        logger.debug("%s [MEMORY] %s +%s (%d) %s", LOG_TAG_DETERMINISTIC, record.agent_id, record.kind.value,
                     record.importance, record.content[:60])
        return record

    async def remember(
        self,
        agent_id: str,
        world_id: str,
        content: str,
        *,
        kind: MemoryKind = MemoryKind.OBSERVATION,
        importance: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        related_ids: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[PromptContext] = None,
    ) -> MemoryRecord:
        """Build and append a record; importance is scored when not given."""
        if importance is None:
            importance = (await self.cognition.score_importance(content, context)).value
        now = self.now_fn()
        record = MemoryRecord(
            agent_id=agent_id,
            world_id=world_id,
            kind=kind,
            content=content,
            created_at=now,
            last_accessed_at=now,
            importance=importance,
            tags=list(tags or []),
            related_memory_ids=list(related_ids or []),
            metadata=dict(metadata or {}),
        )
        return await self.append(record)

    async def touch(self, memory_id: str) -> Optional[MemoryRecord]:
        memory = await self.store.get_memory(memory_id)
        if memory is None:
            return None
        memory = memory.model_copy(update={"last_accessed_at": self.now_fn()})
        await self.store.save_memory(memory)
        return memory

    async def link(self, memory_id: str, related_ids: Iterable[str]) -> Optional[MemoryRecord]:
        """Add ``related_ids`` to a memory's relations (deduplicated, order kept)."""
        memory = await self.store.get_memory(memory_id)
        if memory is None:
            return None
        merged = list(memory.related_memory_ids)
        for rid in related_ids:
            if rid not in merged and rid != memory_id:
                merged.append(rid)
        memory = memory.model_copy(update={"related_memory_ids": merged})
        await self.store.save_memory(memory)
        return memory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(
        self,
        agent_id: str,
        *,
        kind: KindFilter = None,
        min_importance: Optional[int] = None,
        max_age_hours: Optional[float] = None,
        tags: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[MemoryRecord]:
        """Filtered memories, newest first."""
        since = self.now_fn() - timedelta(hours=max_age_hours) if max_age_hours is not None else None
        kinds = _kinds(kind)
        wanted_tags = set(tags or [])
        records = [
            m
            for m in await self.store.list_memories(agent_id, since=since)
            if (kinds is None or m.kind in kinds)
            and (min_importance is None or m.importance >= min_importance)
            and wanted_tags.issubset(m.tags)
        ]
        records.sort(key=lambda m: m.created_at, reverse=True)
        return records[:limit] if limit is not None else records

    async def recent(self, agent_id: str, hours: float = 24.0) -> List[MemoryRecord]:
        return await self.get(agent_id, max_age_hours=hours)

    async def retrieve_relevant(
        self,
        agent_id: str,
        query_text: str,
        top_n: Optional[int] = None,
        *,
        kind: KindFilter = None,
    ) -> List[ScoredMemory]:
        """Top memories for ``query_text``; each returned memory is touched."""
        top_n = self.default_top_n if top_n is None else top_n
        candidates = await self.get(agent_id, kind=kind)
        if not candidates or top_n <= 0:
            return []

        query_embedding = (await self.cognition.embed(query_text)).value
        now = self.now_fn()
        ranked = rank_memories(
            score_memory(m, query_embedding, now, weights=self.weights, half_life_hours=self.half_life_hours)
            for m in candidates
        )[:top_n]

        results: List[ScoredMemory] = []
        for scored in ranked:
            touched = scored.memory.model_copy(update={"last_accessed_at": now})
            await self.store.save_memory(touched)
            results.append(scored.model_copy(update={"memory": touched}))
        return results

    async def memory_chain(self, memory_id: str, depth: int = DEFAULT_CHAIN_DEPTH) -> List[MemoryRecord]:
        """Breadth-first walk over related memories, starting at ``memory_id``."""
        start = await self.store.get_memory(memory_id)
        if start is None:
            return []
        chain = [start]
        seen = {start.id}
        frontier = [start]
        for _ in range(depth):
            next_frontier: List[MemoryRecord] = []
            for memory in frontier:
                for rid in memory.related_memory_ids:
                    if rid in seen:
                        continue
                    seen.add(rid)
                    related = await self.store.get_memory(rid)
                    if related is not None:
                        chain.append(related)
                        next_frontier.append(related)
            if not next_frontier:
                break
            frontier = next_frontier
        return chain

    async def statistics(self, agent_id: str) -> Dict[str, Any]:
        memories = await self.store.list_memories(agent_id)
        if not memories:
            return {"total": 0, "by_kind": {}, "average_importance": 0.0, "oldest": None, "newest": None}
        return {
            "total": len(memories),
            "by_kind": dict(Counter(m.kind.value for m in memories)),
            "average_importance": sum(m.importance for m in memories) / len(memories),
            "oldest": min(m.created_at for m in memories),
            "newest": max(m.created_at for m in memories),
        }
