"""Prompt templates for the LLM-backed Cognition Service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass
class PromptTemplate:
    """Represents a templated prompt with ``{{placeholder}}`` slots."""

    name: str
    system: str
    user: str
    description: str = ""


class PromptLibrary:
    """Container for named prompt templates per cognition operation."""

    def __init__(self) -> None:
        self.templates: Dict[str, PromptTemplate] = {}

    def register(self, template: PromptTemplate) -> None:
        self.templates[template.name] = template

    def get(self, name: str) -> PromptTemplate:
        return self.templates[name]


DEFAULT_PROMPTS = PromptLibrary()

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="importance",
        system=(
            "You rate how significant an experience is for a person living in a small simulated town. "
            "1 is purely mundane (brushing teeth), 10 is life changing (a breakup, a new job)."
        ),
        user=(
            "Who is remembering:\n{{context_summary}}\n\n"
            "Memory:\n{{text}}\n\n"
            'Respond with JSON only: {"importance": <integer 1-10>}'
        ),
        description="Scores a memory's importance on a 1-10 scale.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="reflection",
        system=(
            "You help an agent step back from recent experiences and notice patterns. "
            "Produce one high-level insight grounded in the listed memories."
        ),
        user=(
            "Agent:\n{{context_summary}}\n\n"
            "Recent memories (id: content):\n{{memory_list}}\n\n"
            "Return JSON with fields: insight (one sentence), evidence_ids (ids of the memories that "
            "support it) and importance (integer 1-10).\n"
            'Example: {"insight": "I enjoy the mornings I spend with Maria at the cafe.", '
            '"evidence_ids": ["<id>", "<id>"], "importance": 7}'
        ),
        description="Synthesises an insight from a batch of memories.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="plan",
        system=(
            "You are the agent's planning assistant. Plans must fit the agent's goals, traits and the "
            "time of day. Always follow the JSON schema shown in the example."
        ),
        user=(
            "Agent:\n{{context_summary}}\n\n"
            "Current plan state:\n{{plan_json}}\n\n"
            "Recent memories:\n{{memories_text}}\n\n"
            "Observations:\n{{observations_text}}\n\n"
            "{{granularity_instructions}}\n\n"
            "Example output:\n"
            '{"granularity": "{{granularity}}", "items": ["first entry", "second entry"]}\n\n'
            "Respond with JSON only."
        ),
        description="Daily, hourly or minute plan generation.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="utterance",
        system=(
            "You speak as the agent described below, in a natural, brief conversational style. "
            "Tag each line with an emotion (happy, excited, pleased, friendly, neutral, sad, angry, "
            "frustrated, annoyed) and an intent (greeting, question, statement, farewell)."
        ),
        user=(
            "Speaker:\n{{context_summary}}\n\n"
            "Relevant memories:\n{{memories_text}}\n\n"
            "Conversation so far:\n{{history_text}}\n\n"
            'Respond with JSON only: {"content": "...", "emotion": "...", "intent": "..."}'
        ),
        description="Generates the next line in a dialogue.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="action",
        system=(
            "You are the agent's execution module. Choose the single next action that best follows the "
            "current plan step and the situation."
        ),
        user=(
            "Agent:\n{{context_summary}}\n\n"
            "Observations:\n{{observations_text}}\n\n"
            "Relevant memories:\n{{memories_text}}\n\n"
            "action_type must be one of: move, interact, communicate, observe, reflect, plan. "
            "For move, target is an area name; for communicate, target is an agent id.\n"
            'Example: {"action_type": "move", "target": "cafe", "content": "walk to the cafe", '
            '"reasoning": "time for breakfast"}\n\n'
            "Respond with JSON only."
        ),
        description="Chooses the next concrete action.",
    )
)

GRANULARITY_INSTRUCTIONS = {
    "daily": "Write a daily plan of 5 to 8 broad activities in chronological order.",
    "hourly": "Break the active daily activity ({{active_activity}}) into 3 to 6 concrete steps for the next hour.",
    "minute": "Give exactly one immediate next step (a few minutes long) drawn from the hourly plan.",
}
