"""Context assembly for Cognition Service prompts.

``PromptContext`` bundles everything a cognition call may need about one agent
at one moment: profile, plan, the world around it, fresh observations and the
memories retrieved for the current situation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from genworld.schemas import Agent, AgentStatus, MemoryRecord, Weather, WorldState


@dataclass
class PromptContext:
    """Structured context passed to cognition operations."""

    agent: Agent
    current_time: datetime
    day_phase: str = ""
    weather: Optional[Weather] = None
    area_description: str = ""
    observations: List[str] = field(default_factory=list)
    memories: List[MemoryRecord] = field(default_factory=list)
    nearby_agents: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """Return a JSON-serializable payload of the context."""

        return {
            "agent": {
                "id": self.agent.id,
                "name": self.agent.name,
                "description": self.agent.description,
                "location": self.agent.location.model_dump(mode="json"),
                "current_action": self.agent.current_action,
                "goals": list(self.agent.goals),
                "traits": list(self.agent.traits),
                "relationships": dict(self.agent.relationships),
            },
            "plan": self.agent.plan.model_dump(mode="json"),
            "time": self.current_time.isoformat(),
            "day_phase": self.day_phase,
            "weather": self.weather.model_dump(mode="json") if self.weather else None,
            "area": self.area_description,
            "observations": list(self.observations),
            "nearby_agents": list(self.nearby_agents),
            "memories": [
                {"id": m.id, "kind": m.kind.value, "content": m.content, "importance": m.importance}
                for m in self.memories
            ],
            "extra": self.extra,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), indent=2, default=str)

    def plan_json(self) -> str:
        return json.dumps(self.agent.plan.model_dump(mode="json"), indent=2)

    def memories_text(self, limit: int = 10) -> str:
        lines = [f"- [{m.kind.value}] {m.content}" for m in self.memories[:limit]]
        return "\n".join(lines) if lines else "- (none)"

    def observations_text(self) -> str:
        return "\n".join(f"- {o}" for o in self.observations) if self.observations else "- (nothing notable)"

    def summary(self) -> str:
        agent = self.agent
        lines: List[str] = [
            f"Name: {agent.name}",
            f"Time: {self.current_time:%Y-%m-%d %H:%M} ({self.day_phase or 'unknown'})",
            f"Location: {agent.location.area}",
        ]
        if agent.traits:
            lines.append(f"Traits: {', '.join(agent.traits)}")
        if agent.goals:
            lines.append(f"Goals: {', '.join(agent.goals)}")
        if agent.plan.current_step:
            lines.append(f"Current step: {agent.plan.current_step}")
        if self.nearby_agents:
            lines.append(f"Nearby: {', '.join(self.nearby_agents)}")
        if self.weather:
            lines.append(f"Weather: {self.weather.condition}, {self.weather.temperature:.0f}C")
        return "\n".join(lines)


def build_prompt_context(
    agent: Agent,
    world: WorldState,
    *,
    observations: Iterable[str] = (),
    memories: Iterable[MemoryRecord] = (),
    extra: Optional[Dict[str, Any]] = None,
) -> PromptContext:
    """Assemble a :class:`PromptContext` from a committed world snapshot."""

    area = world.locations.get(agent.location.area)
    nearby = [
        other.name
        for other in world.agents.values()
        if other.id != agent.id
        and other.status == AgentStatus.ACTIVE
        and other.location.area == agent.location.area
    ]
    return PromptContext(
        agent=agent,
        current_time=world.current_time,
        day_phase=world.day_phase.value,
        weather=world.weather,
        area_description=area.description if area else agent.location.area,
        observations=list(observations),
        memories=list(memories),
        nearby_agents=nearby,
        extra=dict(extra or {}),
    )
