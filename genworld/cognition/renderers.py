"""Prompt rendering utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from .context import PromptContext
from .prompts import PromptTemplate


@dataclass
class RenderedPrompt:
    system: str
    user: str


def render_prompt(
    template: PromptTemplate,
    context: Optional[PromptContext],
    extra: Optional[Mapping[str, str]] = None,
) -> RenderedPrompt:
    """Render ``template`` by plain ``{{placeholder}}`` replacement.

    ``extra`` values are substituted first and context-derived placeholders
    second, so an extra value may itself contain context placeholders. Unknown
    placeholders are left untouched.
    """

    replacements = {}
    if context is not None:
        replacements = {
            "{{context_summary}}": context.summary(),
            "{{context_json}}": context.to_json(),
            "{{plan_json}}": context.plan_json(),
            "{{memories_text}}": context.memories_text(),
            "{{observations_text}}": context.observations_text(),
            "{{agent_id}}": context.agent.id,
            "{{active_activity}}": context.agent.plan.active_activity or "(none)",
        }

    system = template.system
    user = template.user
    for key, value in (extra or {}).items():
        placeholder = "{{" + key + "}}"
        system = system.replace(placeholder, value)
        user = user.replace(placeholder, value)
    for placeholder, value in replacements.items():
        system = system.replace(placeholder, value)
        user = user.replace(placeholder, value)

    return RenderedPrompt(system=system, user=user)
