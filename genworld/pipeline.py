"""Per-agent tick pipeline.

observe -> remember -> (maybe) reflect -> (maybe) replan -> act -> (maybe) converse

The pipeline works on a private copy of the agent taken from the tick's
snapshot and commits location, current action and plan in one write at the
end. Relationship changes from dialogue go through ``WorldStateManager``
directly, so a sibling agent's commit never overwrites them. Any exception is
re-raised as ``AgentProcessingError`` tagged with the failing stage.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from .cognition.context import PromptContext, build_prompt_context
from .cognition.dialogue import DialogueCoordinator
from .cognition.planner import Planner, is_salient
from .cognition.reflection import ReflectionTrigger
from .cognition.service import CognitionGateway
from .config import SimulationConfig
from .errors import AgentProcessingError, DialogueError
from .logging_utils import LOG_TAG_DETERMINISTIC, get_logger
from .memory import MemoryStream
from .persistence import StoreStrategy
from .schemas import ActionDecision, Agent, AgentStatus, Location, MemoryKind, WorldState
from .world_state import WorldStateManager

logger = get_logger("pipeline")

ACTION_MEMORY_IMPORTANCE = 3

# Chance per tick of opening a dialogue, keyed by the initiator's label for the other agent.
DIALOGUE_PROBABILITY = {"friend": 0.3, "close_friend": 0.3, "stranger": 0.1}
DEFAULT_DIALOGUE_PROBABILITY = 0.2
UNKNOWN_DIALOGUE_PROBABILITY = 0.1


def dialogue_probability(relationship: Optional[str]) -> float:
    if relationship is None:
        return UNKNOWN_DIALOGUE_PROBABILITY
    return DIALOGUE_PROBABILITY.get(relationship, DEFAULT_DIALOGUE_PROBABILITY)


def perceive(agent: Agent, world: WorldState) -> List[str]:
    """Observations an agent makes of its area in a committed snapshot."""
    area = agent.location.area
    observations: List[str] = []

    for other in world.agents.values():
        if other.id == agent.id or other.status != AgentStatus.ACTIVE or other.location.area != area:
            continue
        if other.current_action:
            observations.append(f"I see {other.name} nearby, {other.current_action}")
        else:
            observations.append(f"I see {other.name} nearby")

    for obj in world.objects.values():
        if obj.location.area == area:
            observations.append(f"I notice {obj.name} in the {area}")

    observations.append(
        f"The environment is {world.weather.condition} and {world.weather.temperature:.0f} degrees "
        f"this {world.day_phase.value}"
    )
    for effect in world.global_effects:
        if effect.area is None or effect.area == area:
            observations.append(effect.description)

    for event in world.recent_events:
        if (event.area is None or event.area == area) and (not event.agent_ids or agent.id in event.agent_ids):
            observations.append(event.description)

    return observations


@dataclass
class AgentTickReport:
    agent_id: str
    observations: int = 0
    reflected: bool = False
    replanned: bool = False
    action: Optional[ActionDecision] = None
    dialogue_id: Optional[str] = None


class AgentPipeline:
    """Runs one agent through a single tick."""

    def __init__(
        self,
        *,
        world: WorldStateManager,
        memory: MemoryStream,
        reflection: ReflectionTrigger,
        planner: Planner,
        dialogues: DialogueCoordinator,
        cognition: CognitionGateway,
        config: SimulationConfig,
        store: Optional[StoreStrategy] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.world = world
        self.memory = memory
        self.reflection = reflection
        self.planner = planner
        self.dialogues = dialogues
        self.cognition = cognition
        self.config = config
        self.store = store
        self.rng = rng or random.Random()
        # Observations seen on the previous tick; only changes are remembered.
        self._last_seen: Dict[str, Set[str]] = {}

    async def run(self, agent_id: str, snapshot: WorldState) -> AgentTickReport:
        report = AgentTickReport(agent_id=agent_id)
        stage = "load"
        try:
            committed = snapshot.agents.get(agent_id)
            if committed is None:
                raise KeyError(f"agent {agent_id} missing from snapshot")
            agent = committed.model_copy(deep=True)

            stage = "observe"
            observations = perceive(agent, snapshot)
            seen_before = self._last_seen.get(agent_id, set())
            self._last_seen[agent_id] = set(observations)
            fresh = [o for o in observations if o not in seen_before]
            fresh.extend(self.world.take_observations(agent_id))
            context = build_prompt_context(agent, snapshot, observations=fresh)

            stage = "remember"
            for observation in fresh:
                await self.memory.remember(
                    agent.id, agent.world_id, observation,
                    kind=MemoryKind.OBSERVATION, tags=["observation"], context=context,
                )
            report.observations = len(fresh)

            stage = "reflect"
            if await self.reflection.should_trigger(agent.id):
                report.reflected = await self.reflection.generate(agent.id, context=context) is not None

            stage = "plan"
            for observation in fresh:
                if is_salient(observation) and await self.planner.replan_if_needed(agent, observation, context):
                    report.replanned = True
                    break
            await self.planner.ensure_current(agent, context)

            stage = "act"
            report.action = await self._act(agent, snapshot, context)

            stage = "commit"
            self.world.patch_agent(
                agent.id, location=agent.location, current_action=agent.current_action, plan=agent.plan
            )
            if self.store is not None:
                committed_agent = self.world.get_agent(agent.id)
                if committed_agent is not None:
                    await self.store.save_agent(committed_agent)

            stage = "converse"
            report.dialogue_id = await self._maybe_converse(agent, context)
        except Exception as exc:
            raise AgentProcessingError(agent_id=agent_id, stage=stage, underlying=exc) from exc

        logger.debug(
            "%s [AGENT] %s obs=%d reflected=%s replanned=%s action=%s",
            LOG_TAG_DETERMINISTIC, agent_id, report.observations, report.reflected, report.replanned,
            report.action.action_type if report.action else None,
        )
        return report

    async def _act(self, agent: Agent, snapshot: WorldState, context: PromptContext) -> ActionDecision:
        query = agent.plan.current_step or "what should I do next"
        scored = await self.memory.retrieve_relevant(agent.id, query, self.config.retrieval_top_n)
        context.memories = [s.memory for s in scored]
        context.extra["areas"] = sorted(snapshot.locations) or sorted({a.location.area for a in snapshot.agents.values()})

        decision = (await self.cognition.generate_action(context)).value
        self._apply(agent, decision, snapshot)
        await self.memory.remember(
            agent.id, agent.world_id, f"{decision.action_type}: {decision.content}",
            kind=MemoryKind.ACTION, importance=ACTION_MEMORY_IMPORTANCE,
            tags=["action", decision.action_type],
        )
        return decision

    @staticmethod
    def _apply(agent: Agent, decision: ActionDecision, snapshot: WorldState) -> None:
        if decision.action_type == "move" and decision.target:
            area = snapshot.locations.get(decision.target)
            if area is not None:
                agent.location = Location(x=area.x, y=area.y, area=area.name)
            elif any(a.location.area == decision.target for a in snapshot.agents.values()):
                agent.location = Location(x=agent.location.x, y=agent.location.y, area=decision.target)
        agent.current_action = decision.content

    async def _maybe_converse(self, agent: Agent, context: PromptContext) -> Optional[str]:
        if self.dialogues.in_dialogue(agent.id):
            return None
        candidates = [
            other
            for other in self.world.get_nearby_agents(agent.id, self.config.nearby_radius)
            if other.location.area == agent.location.area and not self.dialogues.in_dialogue(other.id)
        ]
        self.rng.shuffle(candidates)
        for other in candidates:
            if self.rng.random() >= dialogue_probability(agent.relationships.get(other.id)):
                continue
            try:
                dialogue = await self.dialogues.converse(agent.id, other.id, context)
            except DialogueError as exc:
                # The other agent may have been claimed by a concurrent pipeline.
                logger.debug("[AGENT] %s could not talk to %s: %s", agent.id, other.id, exc)
                continue
            return dialogue.id
        return None
