"""Tests for prompt rendering and the LLM-backed Cognition Service."""

from datetime import datetime, timezone

import pytest

from genworld.cognition.context import build_prompt_context
from genworld.cognition.llm import ImportanceResponse, LLMCognitionService
from genworld.cognition.prompts import DEFAULT_PROMPTS, PromptTemplate
from genworld.cognition.renderers import render_prompt
from genworld.schemas import (
    Agent,
    DialogueMessage,
    Location,
    MemoryRecord,
    PlanDraft,
    PlanGranularity,
    ReflectionInsight,
    Utterance,
    WorldState,
)

START = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


def make_context():
    alice = Agent(
        id="alice",
        world_id="w1",
        name="Alice Smith",
        location=Location(area="cafe"),
        traits=["curious"],
        goals=["finish the mural"],
    )
    world = WorldState(world_id="w1", current_time=START, agents={"alice": alice})
    return build_prompt_context(alice, world, observations=["Bob walks in"])


class Recorder:
    """Stands in for ``call_llm_with_retries`` and replays canned responses."""

    def __init__(self, response) -> None:
        self.response = response
        self.calls = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        return self.response


def test_render_prompt_fills_context_and_extra():
    template = PromptTemplate(name="t", system="About {{agent_id}}", user="{{context_summary}}\n{{note}}\n{{unknown}}")

    rendered = render_prompt(template, make_context(), {"note": "Doing {{active_activity}}"})

    assert rendered.system == "About alice"
    assert "Name: Alice Smith" in rendered.user
    assert "Goals: finish the mural" in rendered.user
    assert "Doing (none)" in rendered.user
    assert rendered.user.endswith("{{unknown}}")


def test_default_prompts_cover_every_operation():
    assert set(DEFAULT_PROMPTS.templates) == {"importance", "reflection", "plan", "utterance", "action"}


@pytest.mark.asyncio
async def test_importance_uses_structured_call(monkeypatch):
    recorder = Recorder(ImportanceResponse(importance=8))
    monkeypatch.setattr("genworld.cognition.llm.call_llm_with_retries", recorder)
    service = LLMCognitionService(llm_provider="openai", llm_model="gpt-4o-mini")

    score = await service.score_importance("Alice got engaged", make_context())

    assert score == 8
    call = recorder.calls[0]
    assert call["response_model"] is ImportanceResponse
    assert call["llm_model"] == "gpt-4o-mini"
    assert "Alice got engaged" in call["user_prompt"]


@pytest.mark.asyncio
async def test_plan_prompt_names_the_granularity(monkeypatch):
    recorder = Recorder(PlanDraft(granularity=PlanGranularity.DAILY, items=["Paint", "Eat"]))
    monkeypatch.setattr("genworld.cognition.llm.call_llm_with_retries", recorder)
    context = make_context()
    context.agent.plan.active_activity = "Paint the mural"
    service = LLMCognitionService(llm_provider="openai", llm_model="gpt-4o-mini")

    draft = await service.generate_plan(PlanGranularity.HOURLY, context)

    assert draft.granularity == PlanGranularity.HOURLY
    assert "Break the active daily activity (Paint the mural)" in recorder.calls[0]["user_prompt"]


@pytest.mark.asyncio
async def test_reflection_evidence_is_limited_to_known_memories(monkeypatch):
    memories = [
        MemoryRecord(agent_id="alice", world_id="w1", content=text, created_at=START, last_accessed_at=START)
        for text in ("Painted all morning", "Sold a painting")
    ]
    recorder = Recorder(ReflectionInsight(insight="Art is paying off", evidence_ids=[memories[1].id, "bogus"]))
    monkeypatch.setattr("genworld.cognition.llm.call_llm_with_retries", recorder)
    service = LLMCognitionService(llm_provider="openai", llm_model="gpt-4o-mini")

    insight = await service.synthesize_reflection(memories, make_context())

    assert insight.evidence_ids == [memories[1].id]
    assert memories[0].id in recorder.calls[0]["user_prompt"]


@pytest.mark.asyncio
async def test_utterance_prompt_includes_history_with_names(monkeypatch):
    recorder = Recorder(Utterance(content="Morning!", emotion="happy", intent="greeting"))
    monkeypatch.setattr("genworld.cognition.llm.call_llm_with_retries", recorder)
    context = make_context()
    context.extra["participant_names"] = {"alice": "Alice Smith", "bob": "Bob"}
    history = [DialogueMessage(speaker_id="bob", content="Nice mural!", timestamp=START)]
    service = LLMCognitionService(llm_provider="openai", llm_model="gpt-4o-mini")

    utterance = await service.generate_utterance(context, history)

    assert utterance.content == "Morning!"
    assert "Bob: Nice mural!" in recorder.calls[0]["user_prompt"]
