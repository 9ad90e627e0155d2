"""LLM-backed Cognition Service.

Structured calls go through mirascope (``call_llm_with_retries``) with pydantic
response models; embeddings use the OpenAI embeddings endpoint. Transport
failures that are worth retrying are re-raised as ``TransientCognitionError``
so ``CognitionGateway`` applies its backoff policy.
"""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence, Type, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from genworld.config import Config
from genworld.errors import TransientCognitionError
from genworld.llm_utils import call_llm_with_retries
from genworld.logging_utils import LOG_TAG_LLM, get_logger
from genworld.schemas import (
    ActionDecision,
    DialogueMessage,
    MemoryRecord,
    PlanDraft,
    PlanGranularity,
    ReflectionInsight,
    Utterance,
)

from .context import PromptContext
from .prompts import DEFAULT_PROMPTS, GRANULARITY_INSTRUCTIONS, PromptLibrary
from .renderers import render_prompt

logger = get_logger("cognition.llm")

ModelT = TypeVar("ModelT", bound=BaseModel)

_TRANSIENT_OPENAI_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class ImportanceResponse(BaseModel):
    importance: int = Field(..., ge=1, le=10, description="Importance rating 1-10")


def _history_text(history: Sequence[DialogueMessage], names: Mapping[str, str]) -> str:
    if not history:
        return "(the conversation is just starting)"
    return "\n".join(f"{names.get(m.speaker_id, m.speaker_id)}: {m.content}" for m in history)


class LLMCognitionService:
    """Cognition Service implementation backed by a hosted LLM."""

    def __init__(
        self,
        *,
        llm_provider: Optional[str] = None,
        llm_model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        prompts: PromptLibrary = DEFAULT_PROMPTS,
        embedding_client: Optional[AsyncOpenAI] = None,
        max_attempts: int = 3,
    ) -> None:
        self.llm_provider = llm_provider or Config.LLM_PROVIDER
        self.llm_model = llm_model or Config.LLM_MODEL
        self.embedding_model = embedding_model or Config.EMBEDDING_MODEL
        self.prompts = prompts
        self.max_attempts = max_attempts
        self._embedding_client = embedding_client

    def _client(self) -> AsyncOpenAI:
        if self._embedding_client is None:
            self._embedding_client = AsyncOpenAI(api_key=Config.OPENAI_API_KEY)
        return self._embedding_client

    async def _structured(
        self,
        template_name: str,
        context: Optional[PromptContext],
        response_model: Type[ModelT],
        extra: Optional[Mapping[str, str]] = None,
    ) -> ModelT:
        rendered = render_prompt(self.prompts.get(template_name), context, extra)
        logger.debug("%s [LLM] %s prompt:\n%s\n%s", LOG_TAG_LLM, template_name, rendered.system, rendered.user)
        try:
            return await call_llm_with_retries(
                system_prompt=rendered.system,
                user_prompt=rendered.user,
                llm_provider=self.llm_provider,
                llm_model=self.llm_model,
                response_model=response_model,
                max_attempts=self.max_attempts,
            )
        except _TRANSIENT_OPENAI_ERRORS as exc:
            raise TransientCognitionError(f"{template_name}: {exc}") from exc

    async def embed(self, text: str) -> List[float]:
        try:
            response = await self._client().embeddings.create(model=self.embedding_model, input=text)
        except _TRANSIENT_OPENAI_ERRORS as exc:
            raise TransientCognitionError(f"embed: {exc}") from exc
        return list(response.data[0].embedding)

    async def score_importance(self, text: str, context: Optional[PromptContext]) -> int:
        result = await self._structured("importance", context, ImportanceResponse, {"text": text})
        return result.importance

    async def synthesize_reflection(
        self, memories: Sequence[MemoryRecord], context: PromptContext
    ) -> ReflectionInsight:
        memory_list = "\n".join(f"{m.id}: {m.content} (importance {m.importance})" for m in memories)
        insight = await self._structured("reflection", context, ReflectionInsight, {"memory_list": memory_list})
        known = {m.id for m in memories}
        cited = [mid for mid in insight.evidence_ids if mid in known]
        return insight.model_copy(update={"evidence_ids": cited or sorted(known)})

    async def generate_plan(self, granularity: PlanGranularity, context: PromptContext) -> PlanDraft:
        extra = {
            "granularity": granularity.value,
            "granularity_instructions": GRANULARITY_INSTRUCTIONS[granularity.value],
        }
        draft = await self._structured("plan", context, PlanDraft, extra)
        return draft.model_copy(update={"granularity": granularity})

    async def generate_utterance(
        self, speaker_context: PromptContext, history: Sequence[DialogueMessage]
    ) -> Utterance:
        names = dict(speaker_context.extra.get("participant_names", {}))
        extra = {"history_text": _history_text(history, names)}
        return await self._structured("utterance", speaker_context, Utterance, extra)

    async def generate_action(self, context: PromptContext) -> ActionDecision:
        return await self._structured("action", context, ActionDecision)
