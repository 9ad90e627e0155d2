"""Deterministic Cognition Service that needs no model.

Useful for local runs, demos and tests: embeddings are hashed bag-of-words
vectors, importance comes from a keyword heuristic, plans fall back to the
default day and actions are parsed from the current plan step.
"""

from __future__ import annotations

import hashlib
import math
import re
from statistics import mean
from typing import List, Optional, Sequence

from genworld.schemas import (
    ActionDecision,
    DialogueMessage,
    MemoryRecord,
    PlanDraft,
    PlanGranularity,
    ReflectionInsight,
    Utterance,
    clamp_importance,
)

from .context import PromptContext
from .service import DEFAULT_DAILY_PLAN, DEFAULT_MINUTE_STEP, FALLBACK_RESPONSES

EMBEDDING_DIMENSIONS = 64

_TOKEN_RE = re.compile(r"[a-z0-9']+")

_HIGH_IMPORTANCE_WORDS = {
    "emergency", "accident", "fire", "died", "death", "married", "wedding", "fight",
    "argument", "promotion", "fired", "love", "unexpected", "danger", "storm",
}
_MEDIUM_IMPORTANCE_WORDS = {
    "met", "talked", "conversation", "new", "changed", "plan", "friend", "party",
    "work", "project", "goal", "decided", "learned", "problem",
}

_MOVE_WORDS = ("go to", "walk to", "move to", "head to", "visit", "return to")
_TALK_WORDS = ("talk", "chat", "speak", "meet", "socialize", "greet")


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


def hashed_embedding(text: str, dimensions: int = EMBEDDING_DIMENSIONS) -> List[float]:
    """Unit-length hashed bag-of-words vector (stable across processes)."""
    vector = [0.0] * dimensions
    for token in tokenize(text):
        digest = hashlib.md5(token.encode("utf-8")).digest()
        vector[int.from_bytes(digest[:4], "little") % dimensions] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class OfflineCognitionService:
    """Rule-based stand-in for the LLM Cognition Service."""

    async def embed(self, text: str) -> List[float]:
        return hashed_embedding(text)

    async def score_importance(self, text: str, context: Optional[PromptContext]) -> int:
        words = set(tokenize(text))
        score = 3
        if words & _HIGH_IMPORTANCE_WORDS:
            score += 4
        if words & _MEDIUM_IMPORTANCE_WORDS:
            score += 2
        return clamp_importance(score)

    async def synthesize_reflection(
        self, memories: Sequence[MemoryRecord], context: PromptContext
    ) -> ReflectionInsight:
        ranked = sorted(memories, key=lambda m: m.importance, reverse=True)[:3]
        themes = "; ".join(m.content.rstrip(".") for m in ranked)
        return ReflectionInsight(
            insight=f"Looking back, what matters most lately: {themes}.",
            evidence_ids=[m.id for m in memories],
            importance=round(mean(m.importance for m in memories)) + 1 if memories else 5,
        )

    async def generate_plan(self, granularity: PlanGranularity, context: PromptContext) -> PlanDraft:
        plan = context.agent.plan
        if granularity == PlanGranularity.DAILY:
            items = list(DEFAULT_DAILY_PLAN)
            if context.agent.goals:
                items[2] = f"Work on {context.agent.goals[0]}"
            return PlanDraft(granularity=granularity, items=items)

        if granularity == PlanGranularity.HOURLY:
            activity = plan.active_activity or (plan.daily_plan[0] if plan.daily_plan else DEFAULT_MINUTE_STEP)
            items = [f"Get ready to {activity[0].lower()}{activity[1:]}", activity, f"Wrap up: {activity}"]
            trigger = context.extra.get("replan_trigger")
            if trigger:
                items.insert(0, f"Deal with what just happened: {trigger}")
            return PlanDraft(granularity=granularity, items=items)

        steps = plan.hourly_plan
        if not steps:
            return PlanDraft(granularity=granularity, items=[DEFAULT_MINUTE_STEP])
        if plan.current_step in steps:
            index = min(steps.index(plan.current_step) + 1, len(steps) - 1)
        else:
            index = 0
        return PlanDraft(granularity=granularity, items=[steps[index]])

    async def generate_utterance(
        self, speaker_context: PromptContext, history: Sequence[DialogueMessage]
    ) -> Utterance:
        partner = speaker_context.extra.get("partner_name", "there")
        if not history:
            return Utterance(content=f"Hello {partner}!", emotion="friendly", intent="greeting")
        if len(history) >= 3:
            return Utterance(content=f"It was nice talking, {partner}. See you later!", emotion="pleased",
                             intent="farewell")
        content = FALLBACK_RESPONSES[len(history) % len(FALLBACK_RESPONSES)]
        return Utterance(content=content, emotion="neutral", intent="statement")

    async def generate_action(self, context: PromptContext) -> ActionDecision:
        step = context.agent.plan.current_step or DEFAULT_MINUTE_STEP
        return parse_step(step, areas=context.extra.get("areas", []))


def parse_step(step: str, *, areas: Sequence[str] = ()) -> ActionDecision:
    """Map a free-text plan step onto an action."""
    lowered = step.lower()
    if any(word in lowered for word in _MOVE_WORDS):
        for area in areas:
            if area.lower() in lowered:
                return ActionDecision(action_type="move", target=area, content=step)
    if any(word in lowered for word in _TALK_WORDS):
        return ActionDecision(action_type="communicate", content=step)
    if "reflect" in lowered or "think" in lowered:
        return ActionDecision(action_type="reflect", content=step)
    if "plan" in lowered:
        return ActionDecision(action_type="plan", content=step)
    if "observe" in lowered or "look" in lowered:
        return ActionDecision(action_type="observe", content=step)
    return ActionDecision(action_type="interact", content=step)
