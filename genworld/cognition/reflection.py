"""Reflection trigger.

An agent reflects once the memories it has not yet reflected on carry enough
weight: the importance of every non-reflection memory created in the trailing
window (24 simulated hours by default) that no reflection cites yet is summed,
and synthesis fires when the sum reaches the threshold (150) with at least
three such memories.

The synthesised insight is stored as a ``reflection`` memory that cites every
source, and each source is linked back to it. Linked sources no longer count
toward later sums, and reflections themselves never count.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from genworld.logging_utils import LOG_TAG_ERROR, LOG_TAG_LLM, get_logger
from genworld.schemas import MemoryKind, MemoryRecord

from .context import PromptContext
from .service import CognitionGateway

if TYPE_CHECKING:
    from genworld.memory import MemoryStream

logger = get_logger("cognition.reflection")

DEFAULT_THRESHOLD = 150
DEFAULT_WINDOW_HOURS = 24.0
DEFAULT_MIN_MEMORIES = 3
REFLECTION_TAGS = ["reflection", "insight"]


@dataclass
class ReflectionCandidates:
    memories: List[MemoryRecord]
    importance_sum: int

    @property
    def count(self) -> int:
        return len(self.memories)


class ReflectionTrigger:
    """Decide when an agent reflects and persist the resulting insight."""

    def __init__(
        self,
        memory: "MemoryStream",
        cognition: CognitionGateway,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        window_hours: float = DEFAULT_WINDOW_HOURS,
        min_memories: int = DEFAULT_MIN_MEMORIES,
    ) -> None:
        self.memory = memory
        self.cognition = cognition
        self.threshold = threshold
        self.window = timedelta(hours=window_hours)
        self.min_memories = min_memories

    async def candidates(self, agent_id: str) -> ReflectionCandidates:
        """Un-reflected, non-reflection memories inside the window."""
        memories = await self.memory.get(agent_id)
        reflection_ids = {m.id for m in memories if m.kind == MemoryKind.REFLECTION}
        cutoff = self.memory.now_fn() - self.window
        pending = [
            m
            for m in memories
            if m.kind != MemoryKind.REFLECTION
            and m.created_at >= cutoff
            and not reflection_ids.intersection(m.related_memory_ids)
        ]
        pending.sort(key=lambda m: m.created_at)
        return ReflectionCandidates(memories=pending, importance_sum=sum(m.importance for m in pending))

    def _fires(self, candidates: ReflectionCandidates) -> bool:
        return candidates.importance_sum >= self.threshold and candidates.count >= self.min_memories

    async def should_trigger(self, agent_id: str) -> bool:
        return self._fires(await self.candidates(agent_id))

    async def generate(
        self,
        agent_id: str,
        force: bool = False,
        *,
        context: Optional[PromptContext] = None,
    ) -> Optional[MemoryRecord]:
        """Synthesise and store a reflection, or return ``None``.

        ``force`` skips the importance threshold but still needs
        ``min_memories`` un-reflected memories. A failed Cognition Service
        call yields ``None``.
        """
        candidates = await self.candidates(agent_id)
        if candidates.count < self.min_memories:
            return None
        if not force and not self._fires(candidates):
            return None

        logger.info(
            "%s [REFLECT] %s reflecting on %d memories (importance %d)",
            LOG_TAG_LLM, agent_id, candidates.count, candidates.importance_sum,
        )
        outcome = await self.cognition.synthesize_reflection(candidates.memories, context)
        insight = outcome.value
        if insight is None:
            logger.warning("%s [REFLECT] no reflection for %s this tick: %s", LOG_TAG_ERROR, agent_id, outcome.error)
            return None

        source_ids = [m.id for m in candidates.memories]
        reflection = await self.memory.remember(
            agent_id,
            candidates.memories[0].world_id,
            insight.insight,
            kind=MemoryKind.REFLECTION,
            importance=insight.importance,
            tags=REFLECTION_TAGS,
            related_ids=source_ids,
            metadata={"evidence_ids": list(insight.evidence_ids), "importance_sum": candidates.importance_sum},
        )
        for source_id in source_ids:
            await self.memory.link(source_id, [reflection.id])
        return reflection

    async def statistics(self, agent_id: str) -> Dict[str, Any]:
        reflections = await self.memory.get(agent_id, kind=MemoryKind.REFLECTION)
        last: Optional[datetime] = reflections[0].created_at if reflections else None
        return {
            "total_reflections": len(reflections),
            "average_importance": (
                sum(r.importance for r in reflections) / len(reflections) if reflections else 0.0
            ),
            "last_reflection_at": last,
        }
