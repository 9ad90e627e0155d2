"""Dialogue coordination between co-located agents.

Dialogue eligibility uses area equality: both agents must be active, in the
same world and in the same named area. (The general nearby-agent query in
``WorldStateManager`` uses metric distance instead.) Every line is requested
from the Cognition Service with the full history; a canned line is used when
the service fails so the conversation keeps moving. When a dialogue ends, a
majority vote over message emotions nudges the participants' relationship one
rung up or down ``RELATIONSHIP_LADDER``.
"""

from __future__ import annotations

import asyncio
import random
from collections import Counter, deque
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Sequence

from genworld.errors import DialogueError, StoreError
from genworld.logging_utils import LOG_TAG_DETERMINISTIC, LOG_TAG_ERROR, LOG_TAG_LLM, get_logger
from genworld.persistence import StoreStrategy
from genworld.schemas import Agent, AgentStatus, Dialogue, DialogueMessage, MemoryKind, Utterance
from genworld.world_state import WorldStateManager

from .context import PromptContext, build_prompt_context
from .service import FALLBACK_GREETINGS, FALLBACK_RESPONSES, CognitionGateway

if TYPE_CHECKING:
    from genworld.memory import MemoryStream

logger = get_logger("cognition.dialogue")

POSITIVE_EMOTIONS = frozenset({"happy", "excited", "pleased", "friendly"})
NEGATIVE_EMOTIONS = frozenset({"angry", "sad", "frustrated", "annoyed"})
FAREWELL_INTENTS = frozenset({"farewell", "goodbye"})

RELATIONSHIP_LADDER = ["enemy", "rival", "stranger", "acquaintance", "friend", "close_friend"]
DEFAULT_RELATIONSHIP = "stranger"

COMMON_TOPICS = ["work", "family", "food", "weather", "plans", "feelings", "news", "hobbies"]

DIALOGUE_MEMORY_IMPORTANCE = 4
DEFAULT_RECENT_LIMIT = 200


def classify_sentiment(messages: Sequence[DialogueMessage]) -> str:
    """``positive``/``negative`` by majority of tagged emotions, else ``neutral``."""
    positive = sum(1 for m in messages if (m.emotion or "neutral") in POSITIVE_EMOTIONS)
    negative = sum(1 for m in messages if (m.emotion or "neutral") in NEGATIVE_EMOTIONS)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


def extract_topics(messages: Sequence[DialogueMessage]) -> List[str]:
    text = " ".join(m.content for m in messages).lower()
    return [topic for topic in COMMON_TOPICS if topic in text]


def shift_relationship(label: Optional[str], steps: int) -> Optional[str]:
    """Move ``label`` along the ladder; custom labels are left alone (returns None)."""
    current = label or DEFAULT_RELATIONSHIP
    if current not in RELATIONSHIP_LADDER:
        return None
    index = RELATIONSHIP_LADDER.index(current) + steps
    return RELATIONSHIP_LADDER[max(0, min(len(RELATIONSHIP_LADDER) - 1, index))]


class DialogueCoordinator:
    """Start, advance and close conversations, folding outcomes back into state."""

    def __init__(
        self,
        world: WorldStateManager,
        memory: "MemoryStream",
        cognition: CognitionGateway,
        *,
        now_fn: Callable[[], datetime],
        store: Optional[StoreStrategy] = None,
        rng: Optional[random.Random] = None,
        max_turns: int = 4,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
    ) -> None:
        self.world = world
        self.memory = memory
        self.cognition = cognition
        self.now_fn = now_fn
        self.store = store
        self.rng = rng or random.Random()
        self.max_turns = max_turns
        # Active dialogues only; ended ones move to the bounded ``_recent`` window.
        self._dialogues: Dict[str, Dialogue] = {}
        self._recent: Deque[Dialogue] = deque(maxlen=recent_limit)
        self._ended_total = 0
        self._ended_by_agent: Counter[str] = Counter()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, dialogue_id: str) -> Dialogue:
        """Look up an active or recently ended dialogue."""
        dialogue = self._dialogues.get(dialogue_id)
        if dialogue is None:
            dialogue = next((d for d in self._recent if d.id == dialogue_id), None)
        if dialogue is None:
            raise DialogueError(f"Unknown dialogue {dialogue_id!r}")
        return dialogue

    def active_dialogues(self, agent_id: Optional[str] = None) -> List[Dialogue]:
        return [
            d
            for d in self._dialogues.values()
            if d.is_active and (agent_id is None or agent_id in d.participant_ids)
        ]

    def in_dialogue(self, agent_id: str) -> bool:
        return bool(self.active_dialogues(agent_id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _agent(self, agent_id: str) -> Agent:
        agent = self.world.get_agent(agent_id)
        if agent is None:
            raise DialogueError(f"Unknown agent {agent_id!r}")
        return agent

    def _check_pair(self, initiator: Agent, target: Agent) -> None:
        if initiator.id == target.id:
            raise DialogueError("An agent cannot start a dialogue with itself")
        for agent in (initiator, target):
            if agent.status != AgentStatus.ACTIVE:
                raise DialogueError(f"Agent {agent.id} is {agent.status.value}, not active")
        if initiator.world_id != target.world_id:
            raise DialogueError(f"Agents {initiator.id} and {target.id} are in different worlds")
        if initiator.location.area != target.location.area:
            raise DialogueError(
                f"Agents {initiator.id} ({initiator.location.area}) and {target.id} "
                f"({target.location.area}) are not in the same area"
            )
        for agent in (initiator, target):
            if self.in_dialogue(agent.id):
                raise DialogueError(f"Agent {agent.id} is already in a dialogue")

    async def _speaker_context(
        self, speaker: Agent, partner: Agent, dialogue: Dialogue, base: Optional[PromptContext] = None
    ) -> PromptContext:
        if base is not None and base.agent.id == speaker.id:
            context = base
        else:
            query = dialogue.messages[-1].content if dialogue.messages else partner.name
            memories = [s.memory for s in await self.memory.retrieve_relevant(speaker.id, query, top_n=5)]
            context = build_prompt_context(speaker, self.world.snapshot(), memories=memories)
        context.extra["partner_name"] = partner.name
        context.extra["participant_names"] = {speaker.id: speaker.name, partner.id: partner.name}
        return context

    async def _add_message(self, dialogue: Dialogue, speaker: Agent, listener: Agent, utterance: Utterance) -> DialogueMessage:
        message = DialogueMessage(
            speaker_id=speaker.id,
            content=utterance.content,
            timestamp=self.now_fn(),
            emotion=utterance.emotion or "neutral",
            intent=utterance.intent,
        )
        dialogue.messages.append(message)
        self.world.update_dialogue(dialogue)
        if self.store is not None:
            await self.store.save_dialogue(dialogue)

        tags = ["conversation", "dialogue", message.emotion or "neutral"]
        metadata = {"dialogue_id": dialogue.id}
        await self.memory.remember(
            speaker.id, speaker.world_id, f"I said: {message.content}",
            kind=MemoryKind.DIALOGUE, importance=DIALOGUE_MEMORY_IMPORTANCE, tags=tags, metadata=metadata,
        )
        await self.memory.remember(
            listener.id, listener.world_id, f"{speaker.name} said: {message.content}",
            kind=MemoryKind.DIALOGUE, importance=DIALOGUE_MEMORY_IMPORTANCE, tags=tags, metadata=metadata,
        )
        return message

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def initiate(
        self, initiator_id: str, target_id: str, context: Optional[PromptContext] = None
    ) -> Dialogue:
        initiator = self._agent(initiator_id)
        target = self._agent(target_id)
        self._check_pair(initiator, target)

        dialogue = Dialogue(
            participant_ids=[initiator.id, target.id],
            world_id=initiator.world_id,
            location=initiator.location.area,
            started_at=self.now_fn(),
        )
        self._dialogues[dialogue.id] = dialogue
        self.world.start_dialogue(dialogue)

        try:
            speaker_context = await self._speaker_context(initiator, target, dialogue, context)
            fallback = Utterance(
                content=self.rng.choice(FALLBACK_GREETINGS).format(name=target.name),
                emotion="friendly",
                intent="greeting",
            )
            outcome = await self.cognition.generate_utterance(speaker_context, dialogue.messages, fallback=fallback)
            await self._add_message(dialogue, initiator, target, outcome.value)
        except (asyncio.CancelledError, Exception):
            await self.end(dialogue.id, "interrupted")
            raise
        logger.info("%s [DIALOGUE] %s started talking to %s in %s", LOG_TAG_LLM, initiator.name, target.name,
                    dialogue.location)
        return dialogue

    async def respond(
        self, responder_id: str, dialogue_id: str, incoming: Optional[DialogueMessage] = None
    ) -> DialogueMessage:
        dialogue = self.get(dialogue_id)
        if not dialogue.is_active:
            raise DialogueError(f"Dialogue {dialogue_id} has already ended")
        if responder_id not in dialogue.participant_ids:
            raise DialogueError(f"Agent {responder_id} is not part of dialogue {dialogue_id}")

        responder = self._agent(responder_id)
        partner_id = next(pid for pid in dialogue.participant_ids if pid != responder_id)
        partner = self._agent(partner_id)
        if (
            responder.location.area != partner.location.area
            or responder.status != AgentStatus.ACTIVE
            or partner.status != AgentStatus.ACTIVE
        ):
            await self.end(dialogue_id, "lost proximity")
            raise DialogueError(f"Dialogue {dialogue_id} ended: participants are no longer together")

        if incoming is not None and (not dialogue.messages or dialogue.messages[-1] != incoming):
            dialogue.messages.append(incoming)

        context = await self._speaker_context(responder, partner, dialogue)
        fallback = Utterance(content=self.rng.choice(FALLBACK_RESPONSES), emotion="neutral", intent="statement")
        outcome = await self.cognition.generate_utterance(context, dialogue.messages, fallback=fallback)
        return await self._add_message(dialogue, responder, partner, outcome.value)

    async def end(self, dialogue_id: str, reason: str = "natural conclusion") -> Dialogue:
        """Close a dialogue and update the participants' relationship.

        Ending an already closed dialogue returns it unchanged.
        """
        dialogue = self.get(dialogue_id)
        if not dialogue.is_active:
            return dialogue

        dialogue.ended_at = self.now_fn()
        dialogue.end_reason = reason
        dialogue.topics = extract_topics(dialogue.messages)
        self.world.end_dialogue(dialogue.id)
        self._dialogues.pop(dialogue.id, None)
        self._recent.append(dialogue)
        self._ended_total += 1
        self._ended_by_agent.update(dialogue.participant_ids)
        if self.store is not None:
            try:
                await self.store.save_dialogue(dialogue)
            except StoreError as exc:
                logger.error("%s [DIALOGUE] %s ended but not persisted: %s", LOG_TAG_ERROR, dialogue.id, exc)

        sentiment = classify_sentiment(dialogue.messages)
        steps = {"positive": 1, "negative": -1}.get(sentiment, 0)
        if steps and len(dialogue.participant_ids) == 2:
            first, second = dialogue.participant_ids
            self._nudge(first, second, steps)
            self._nudge(second, first, steps)

        logger.info(
            "%s [DIALOGUE] %s ended (%s, %d messages, %s)",
            LOG_TAG_DETERMINISTIC, dialogue.id, reason, len(dialogue.messages), sentiment,
        )
        return dialogue

    def _nudge(self, agent_id: str, other_id: str, steps: int) -> None:
        agent = self.world.get_agent(agent_id)
        if agent is None:
            return
        current = agent.relationships.get(other_id)
        updated = shift_relationship(current, steps)
        if updated is None:
            logger.debug("[DIALOGUE] keeping custom relationship %s->%s=%s", agent_id, other_id, current)
            return
        if updated != current:
            self.world.set_relationship(agent_id, other_id, updated)

    # ------------------------------------------------------------------
    # Orchestration helpers
    # ------------------------------------------------------------------

    async def converse(
        self, initiator_id: str, target_id: str, context: Optional[PromptContext] = None
    ) -> Dialogue:
        """Run a whole exchange: greeting, alternating replies, then ``end``.

        A conversation cut short by cancellation (an agent timeout) or an
        unexpected failure is ended as ``interrupted`` before the error
        propagates, so neither participant stays locked in it.
        """
        dialogue = await self.initiate(initiator_id, target_id, context)
        speakers = [target_id, initiator_id]
        reason = "natural conclusion"
        turn = 0
        try:
            while len(dialogue.messages) < self.max_turns:
                last = dialogue.messages[-1]
                if (last.intent or "").lower() in FAREWELL_INTENTS:
                    reason = "farewell"
                    break
                try:
                    await self.respond(speakers[turn % 2], dialogue.id)
                except DialogueError:
                    # respond() already closed the dialogue when proximity was lost
                    return dialogue
                turn += 1
        except (asyncio.CancelledError, Exception):
            await self.end(dialogue.id, "interrupted")
            raise
        return await self.end(dialogue.id, reason)

    async def end_out_of_range(self) -> List[Dialogue]:
        """Close active dialogues whose participants no longer share an area."""
        closed: List[Dialogue] = []
        for dialogue in self.active_dialogues():
            agents = [self.world.get_agent(pid) for pid in dialogue.participant_ids]
            together = all(a is not None and a.status == AgentStatus.ACTIVE for a in agents) and (
                len({a.location.area for a in agents if a is not None}) == 1
            )
            if not together:
                closed.append(await self.end(dialogue.id, "lost proximity"))
        return closed

    def statistics(self, agent_id: Optional[str] = None) -> Dict[str, Any]:
        """Counts cover every dialogue; averages, partners, topics and
        sentiment cover active dialogues plus the recent ended window."""
        active = [d for d in self._dialogues.values() if agent_id is None or agent_id in d.participant_ids]
        finished = [d for d in self._recent if agent_id is None or agent_id in d.participant_ids]
        dialogues = active + finished
        ended = self._ended_total if agent_id is None else self._ended_by_agent[agent_id]
        partners: Counter[str] = Counter()
        if agent_id is not None:
            for d in dialogues:
                partners.update(pid for pid in d.participant_ids if pid != agent_id)
        sentiments = Counter(classify_sentiment(d.messages) for d in finished)
        topics = Counter(t for d in finished for t in d.topics)
        return {
            "active_dialogues": len(active),
            "total_dialogues": len(active) + ended,
            "average_messages": (sum(len(d.messages) for d in dialogues) / len(dialogues)) if dialogues else 0.0,
            "most_frequent_partner": partners.most_common(1)[0][0] if partners else None,
            "common_topics": [t for t, _ in topics.most_common(3)],
            "sentiment_distribution": {k: sentiments.get(k, 0) for k in ("positive", "neutral", "negative")},
        }
