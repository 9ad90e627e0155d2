"""Structured LLM calls with validation-aware retries."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Sequence, TypeVar

from mirascope import llm
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from genworld.logging_utils import LOG_TAG_ERROR, LOG_TAG_LLM, get_logger

logger = get_logger("llm")

ModelT = TypeVar("ModelT", bound=BaseModel)
LLM_TIMEOUT_SECONDS = 120.0


@dataclass(slots=True)
class ValidationFeedback:
    """Structured feedback for retrying failed LLM schema outputs."""

    llm_text: str
    issues: Sequence[str]


def _truncate_preview(value: Any, *, limit: int = 80) -> str:
    if value is None:
        return "null"
    text = repr(value)
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def inject_validation_feedback(error: ValidationError) -> ValidationFeedback:
    """Turn a pydantic ValidationError into guidance appended to the retry prompt."""

    issues: list[str] = []
    for err in error.errors(include_url=False):
        loc = ".".join(str(part) for part in err.get("loc", [])) or "root"
        details = f"{loc}: {err.get('msg', 'validation error')}"
        if err.get("type"):
            details += f" [type={err['type']}]"
        if "input" in err:
            details += f" | received={_truncate_preview(err.get('input'))}"
        issues.append(details)

    if not issues:
        issues.append("root: response did not match the expected schema")

    instructions = [
        "Your previous JSON response failed to validate against the required schema.",
        "Produce a corrected response that strictly matches the schema.",
        "Return only valid JSON, without explanations or code fences.",
        "Issues detected:",
    ]
    instructions.extend(f"- {issue}" for issue in issues)
    return ValidationFeedback(llm_text="\n".join(instructions), issues=issues)


async def call_llm_with_retries(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_provider: str,
    llm_model: str,
    response_model: type[ModelT],
    max_attempts: int = 3,
    timeout_seconds: float = LLM_TIMEOUT_SECONDS,
    feedback_builder: Callable[[ValidationError], ValidationFeedback] = inject_validation_feedback,
) -> ModelT:
    """Invoke a structured LLM call, retrying schema failures with feedback.

    Validation feedback is appended to the original prompt so the model keeps
    full context while seeing what to correct. Timeouts and provider errors are
    not retried here; they propagate to the caller.
    """

    system_prompt = system_prompt.strip()
    base_user_prompt = user_prompt.strip()
    feedback_payload: ValidationFeedback | None = None

    def _build_prompt() -> str:
        sections = [system_prompt, base_user_prompt]
        if feedback_payload is not None:
            sections.append(feedback_payload.llm_text)
        return "\n\n".join(section for section in sections if section)

    @llm.call(provider=llm_provider, model=llm_model, response_model=response_model)
    async def _invoke(prompt: str) -> str:
        return prompt

    attempt_number = 0
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(ValidationError),
        stop=stop_after_attempt(max_attempts),
        reraise=True,
    ):
        with attempt:
            attempt_number += 1
            if attempt_number > 1:
                logger.info(
                    "%s [LLM] retry %d/%d for %s; attempting schema correction",
                    LOG_TAG_LLM, attempt_number, max_attempts, response_model.__name__,
                )
            try:
                return await asyncio.wait_for(_invoke(_build_prompt()), timeout=timeout_seconds)
            except ValidationError as exc:
                feedback_payload = feedback_builder(exc)
                logger.warning(
                    "%s [LLM] schema validation failed for %s (attempt %d/%d): %s",
                    LOG_TAG_ERROR, response_model.__name__, attempt_number, max_attempts,
                    "; ".join(feedback_payload.issues),
                )
                raise
            except asyncio.TimeoutError:
                logger.warning(
                    "%s [LLM] call timed out after %ss for %s",
                    LOG_TAG_ERROR, timeout_seconds, response_model.__name__,
                )
                raise

    raise RuntimeError("LLM retry mechanism exited unexpectedly")
