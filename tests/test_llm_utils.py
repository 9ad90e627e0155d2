"""Unit tests for the LLM retry helper."""

import asyncio

import pytest
from pydantic import BaseModel, ValidationError

from genworld.llm_utils import call_llm_with_retries, inject_validation_feedback


class DummyModel(BaseModel):
    content: str


def _validation_error() -> ValidationError:
    try:
        DummyModel.model_validate({})
    except ValidationError as exc:
        return exc
    raise AssertionError("expected a validation error")


def make_decorator(caller, expected_model=None):
    def fake_decorator(*, provider, model, response_model):
        if expected_model is not None:
            assert response_model is expected_model

        def wrapper(fn):
            async def inner(prompt: str):
                return await caller(prompt)

            return inner

        return wrapper

    return fake_decorator


@pytest.mark.asyncio
async def test_call_llm_with_retries_success(monkeypatch):
    recorded_prompts: list[str] = []

    async def fake_caller(prompt: str) -> DummyModel:
        recorded_prompts.append(prompt)
        return DummyModel(content="ok")

    monkeypatch.setattr("genworld.llm_utils.llm.call", make_decorator(fake_caller, DummyModel))

    result = await call_llm_with_retries(
        system_prompt="System context",
        user_prompt="What now?",
        llm_provider="openai",
        llm_model="gpt-4o-mini",
        response_model=DummyModel,
    )

    assert result.content == "ok"
    assert recorded_prompts == ["System context\n\nWhat now?"]


@pytest.mark.asyncio
async def test_call_llm_with_retries_injects_feedback(monkeypatch):
    attempts: list[str] = []
    validation_error = _validation_error()

    async def fake_caller(prompt: str) -> DummyModel:
        attempts.append(prompt)
        if len(attempts) == 1:
            raise validation_error
        return DummyModel(content="fixed")

    monkeypatch.setattr("genworld.llm_utils.llm.call", make_decorator(fake_caller))

    result = await call_llm_with_retries(
        system_prompt="System",
        user_prompt="User",
        llm_provider="openai",
        llm_model="gpt-4o-mini",
        response_model=DummyModel,
    )

    assert result.content == "fixed"
    assert len(attempts) == 2
    assert "Your previous JSON response failed to validate against the required schema." in attempts[1]
    assert "- content: Field required" in attempts[1]


@pytest.mark.asyncio
async def test_call_llm_with_retries_gives_up_after_max_attempts(monkeypatch):
    attempts: list[str] = []
    validation_error = _validation_error()

    async def fake_caller(prompt: str) -> DummyModel:
        attempts.append(prompt)
        raise validation_error

    monkeypatch.setattr("genworld.llm_utils.llm.call", make_decorator(fake_caller))

    with pytest.raises(ValidationError):
        await call_llm_with_retries(
            system_prompt="System",
            user_prompt="User",
            llm_provider="openai",
            llm_model="gpt-4o-mini",
            response_model=DummyModel,
            max_attempts=2,
        )
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_timeouts_are_not_retried(monkeypatch):
    attempts: list[str] = []

    async def slow_caller(prompt: str) -> DummyModel:
        attempts.append(prompt)
        await asyncio.sleep(1)
        return DummyModel(content="late")

    monkeypatch.setattr("genworld.llm_utils.llm.call", make_decorator(slow_caller))

    with pytest.raises(asyncio.TimeoutError):
        await call_llm_with_retries(
            system_prompt="System",
            user_prompt="User",
            llm_provider="openai",
            llm_model="gpt-4o-mini",
            response_model=DummyModel,
            timeout_seconds=0.01,
        )
    assert len(attempts) == 1


def test_feedback_lists_each_issue():
    feedback = inject_validation_feedback(_validation_error())

    assert feedback.issues == ["content: Field required [type=missing] | received={}"]
    assert feedback.llm_text.endswith("- content: Field required [type=missing] | received={}")
