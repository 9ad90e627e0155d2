"""Versioned, in-memory world state.

``WorldStateManager`` is the single writer for a world. Every mutation runs
under one lock, replaces the current ``WorldState`` with an updated copy,
increments ``version`` and pushes the previous state into a bounded history
ring so the last mutations can be reverted one step at a time. Readers get deep
copies of a fully committed version.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from .clock import day_phase_for_hour
from .errors import WorldStateError
from .logging_utils import LOG_TAG_DETERMINISTIC, get_logger
from .schemas import (
    Agent,
    AgentStatus,
    Area,
    Dialogue,
    GlobalEffect,
    Weather,
    WorldEventRecord,
    WorldObject,
    WorldState,
)

logger = get_logger("world_state")

DEFAULT_HISTORY_DEPTH = 10
RECENT_EVENT_LIMIT = 50


def distance(a: Agent, b: Agent) -> float:
    return math.hypot(a.location.x - b.location.x, a.location.y - b.location.y)


class WorldStateManager:
    """Owns one world's mutable state behind a single mutation lock."""

    def __init__(self, initial: WorldState, *, history_depth: int = DEFAULT_HISTORY_DEPTH) -> None:
        self._state = initial.model_copy(deep=True)
        self._history: Deque[WorldState] = deque(maxlen=history_depth)
        self._lock = threading.RLock()

    @property
    def world_id(self) -> str:
        return self._state.world_id

    @property
    def version(self) -> int:
        return self._state.version

    @property
    def current_time(self) -> datetime:
        return self._state.current_time

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> WorldState:
        """Deep copy of the latest committed state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            agent = self._state.agents.get(agent_id)
            return agent.model_copy(deep=True) if agent else None

    def active_agents(self) -> List[Agent]:
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in self._state.agents.values()
                if a.status == AgentStatus.ACTIVE
            ]

    def agents_in_area(self, area: str, *, exclude: Optional[str] = None) -> List[Agent]:
        """Active agents whose location area equals ``area``."""
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in self._state.agents.values()
                if a.status == AgentStatus.ACTIVE and a.location.area == area and a.id != exclude
            ]

    def get_nearby_agents(self, agent_id: str, radius: float = 50.0) -> List[Agent]:
        """Active agents within ``radius`` units (euclidean) of ``agent_id``."""
        with self._lock:
            origin = self._state.agents.get(agent_id)
            if origin is None:
                return []
            return [
                a.model_copy(deep=True)
                for a in self._state.agents.values()
                if a.id != agent_id and a.status == AgentStatus.ACTIVE and distance(origin, a) <= radius
            ]

    def objects_in_area(self, area: str) -> List[WorldObject]:
        with self._lock:
            return [o.model_copy(deep=True) for o in self._state.objects.values() if o.location.area == area]

    def history(self) -> List[int]:
        """Versions available for revert, oldest first."""
        with self._lock:
            return [state.version for state in self._history]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state
            return {
                "version": state.version,
                "agents": len(state.agents),
                "active_agents": sum(1 for a in state.agents.values() if a.status == AgentStatus.ACTIVE),
                "objects": len(state.objects),
                "locations": len(state.locations),
                "active_dialogues": len(state.active_dialogues),
                "global_effects": len(state.global_effects),
                "history_depth": len(self._history),
                "current_time": state.current_time,
                "day_phase": state.day_phase.value,
            }

    # ------------------------------------------------------------------
    # Mutation core
    # ------------------------------------------------------------------

    def mutate(self, change: Callable[[WorldState], None], *, reason: str = "update") -> int:
        """Apply ``change`` to a copy of the state and commit it as a new version."""
        with self._lock:
            previous = self._state
            draft = previous.model_copy(deep=True)
            change(draft)
            draft.version = previous.version + 1
            self._history.append(previous)
            self._state = draft
            logger.debug("%s [WORLD] v%d %s", LOG_TAG_DETERMINISTIC, draft.version, reason)
            return draft.version

    def revert(self) -> bool:
        """Restore the state before the most recent mutation.

        Returns ``False`` and leaves state untouched when history is empty.
        """
        with self._lock:
            if not self._history:
                return False
            self._state = self._history.pop()
            logger.info("%s [WORLD] reverted to v%d", LOG_TAG_DETERMINISTIC, self._state.version)
            return True

    @staticmethod
    def _require_agent(state: WorldState, agent_id: str) -> Agent:
        agent = state.agents.get(agent_id)
        if agent is None:
            raise WorldStateError(f"Unknown agent {agent_id!r} in world {state.world_id!r}")
        return agent

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_time(self, current_time: datetime) -> int:
        def change(state: WorldState) -> None:
            # Events stay visible through the first tick after the one they happened on.
            previous = state.current_time
            state.current_time = current_time
            state.day_phase = day_phase_for_hour(current_time.hour)
            state.global_effects = [
                e for e in state.global_effects if e.expires_at is None or e.expires_at > current_time
            ]
            state.recent_events = [e for e in state.recent_events if e.at >= previous]

        return self.mutate(change, reason=f"time -> {current_time.isoformat()}")

    def update_weather(self, weather: Weather) -> int:
        def change(state: WorldState) -> None:
            state.weather = weather.model_copy()

        return self.mutate(change, reason=f"weather -> {weather.condition}")

    def put_agent(self, agent: Agent) -> int:
        if agent.world_id != self._state.world_id:
            raise WorldStateError(f"Agent {agent.id} belongs to world {agent.world_id!r}")

        def change(state: WorldState) -> None:
            state.agents[agent.id] = agent.model_copy(deep=True)
            state.relationships[agent.id] = dict(agent.relationships)

        return self.mutate(change, reason=f"put agent {agent.id}")

    def patch_agent(self, agent_id: str, **fields: Any) -> int:
        """Update selected top-level agent fields, leaving the rest as committed."""

        def change(state: WorldState) -> None:
            agent = self._require_agent(state, agent_id)
            state.agents[agent_id] = agent.model_copy(update=fields, deep=True)

        return self.mutate(change, reason=f"patch agent {agent_id} {sorted(fields)}")

    def remove_agent(self, agent_id: str) -> int:
        """Logical delete: the record stays with status ``deleted``."""
        return self.patch_agent(agent_id, status=AgentStatus.DELETED)

    def set_relationship(self, agent_id: str, other_id: str, label: str) -> int:
        def change(state: WorldState) -> None:
            agent = self._require_agent(state, agent_id)
            agent.relationships[other_id] = label
            state.relationships.setdefault(agent_id, {})[other_id] = label

        return self.mutate(change, reason=f"relationship {agent_id}->{other_id}={label}")

    def put_object(self, obj: WorldObject) -> int:
        def change(state: WorldState) -> None:
            state.objects[obj.id] = obj.model_copy(deep=True)

        return self.mutate(change, reason=f"put object {obj.id}")

    def remove_object(self, object_id: str) -> int:
        def change(state: WorldState) -> None:
            if state.objects.pop(object_id, None) is None:
                raise WorldStateError(f"Unknown object {object_id!r}")

        return self.mutate(change, reason=f"remove object {object_id}")

    def add_location(self, area: Area) -> int:
        def change(state: WorldState) -> None:
            state.locations[area.name] = area.model_copy(deep=True)

        return self.mutate(change, reason=f"add location {area.name}")

    def start_dialogue(self, dialogue: Dialogue) -> int:
        def change(state: WorldState) -> None:
            state.active_dialogues[dialogue.id] = dialogue.model_copy(deep=True)

        return self.mutate(change, reason=f"dialogue {dialogue.id} started")

    def update_dialogue(self, dialogue: Dialogue) -> int:
        def change(state: WorldState) -> None:
            if dialogue.is_active:
                state.active_dialogues[dialogue.id] = dialogue.model_copy(deep=True)
            else:
                state.active_dialogues.pop(dialogue.id, None)

        return self.mutate(change, reason=f"dialogue {dialogue.id} updated")

    def end_dialogue(self, dialogue_id: str) -> int:
        def change(state: WorldState) -> None:
            if state.active_dialogues.pop(dialogue_id, None) is None:
                raise WorldStateError(f"Dialogue {dialogue_id!r} is not active")

        return self.mutate(change, reason=f"dialogue {dialogue_id} ended")

    def add_global_effect(self, effect: GlobalEffect) -> int:
        def change(state: WorldState) -> None:
            state.global_effects.append(effect.model_copy())

        return self.mutate(change, reason=f"effect {effect.description!r}")

    def record_event(self, record: WorldEventRecord) -> int:
        def change(state: WorldState) -> None:
            state.recent_events.append(record.model_copy())
            del state.recent_events[:-RECENT_EVENT_LIMIT]

        return self.mutate(change, reason=f"event {record.kind.value}")

    def add_observation(self, agent_id: Optional[str], text: str) -> int:
        """Queue an injected observation for one agent, or every agent when ``None``."""

        def change(state: WorldState) -> None:
            targets = [agent_id] if agent_id else list(state.agents)
            for target in targets:
                self._require_agent(state, target)
                state.pending_observations.setdefault(target, []).append(text)

        return self.mutate(change, reason="observation injected")

    def take_observations(self, agent_id: str) -> List[str]:
        """Pop the injected observations for ``agent_id`` (no version bump when empty)."""
        with self._lock:
            if not self._state.pending_observations.get(agent_id):
                return []
            taken: List[str] = []

            def change(state: WorldState) -> None:
                taken.extend(state.pending_observations.pop(agent_id, []))

            self.mutate(change, reason=f"observations consumed by {agent_id}")
            return taken
