"""Cognition Service contract and the resilient gateway the engine calls through.

The engine never talks to a ``CognitionService`` directly. ``CognitionGateway``
applies a timeout and capped exponential-backoff retries to every call and, when
the service still fails (or returns something malformed), substitutes the named
fallback for that operation. Callers always receive a ``CognitionOutcome`` and
never an exception.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Protocol, Sequence, TypeVar

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from genworld.errors import TransientCognitionError
from genworld.logging_utils import LOG_TAG_ERROR, LOG_TAG_LLM, get_logger
from genworld.schemas import (
    ActionDecision,
    DialogueMessage,
    MemoryRecord,
    PlanDraft,
    PlanGranularity,
    ReflectionInsight,
    Utterance,
    clamp_importance,
)

from .context import PromptContext

logger = get_logger("cognition")

T = TypeVar("T")


# ============================================================================
# Named fallbacks
# ============================================================================

class Fallback(str, Enum):
    NO_EMBEDDING = "no_embedding"
    DEFAULT_IMPORTANCE = "default_importance"
    NO_REFLECTION = "no_reflection"
    DEFAULT_PLAN = "default_plan"
    CANNED_UTTERANCE = "canned_utterance"
    DEFAULT_ACTION = "default_action"


DEFAULT_IMPORTANCE = 5

DEFAULT_ACTION = ActionDecision(
    action_type="observe",
    content="observe surroundings",
    reasoning="Fallback action while cognition is unavailable",
)

DEFAULT_DAILY_PLAN: List[str] = [
    "Wake up and start the day",
    "Have breakfast",
    "Work on main goals",
    "Take a break and socialize",
    "Continue productive activities",
    "Have dinner",
    "Relax and reflect on the day",
    "Prepare for rest",
]

DEFAULT_MINUTE_STEP = "Observe surroundings and decide next action"

FALLBACK_GREETINGS: List[str] = [
    "Hello {name}!",
    "Hi there, {name}.",
    "Good to see you, {name}.",
    "Hey {name}, how are you?",
]

FALLBACK_RESPONSES: List[str] = [
    "That's interesting.",
    "I see what you mean.",
    "Thanks for sharing that.",
    "I understand.",
    "That makes sense.",
]


# ============================================================================
# Service contract
# ============================================================================

class CognitionService(Protocol):
    """Opaque remote cognition: embeddings, ratings, plans and utterances."""

    async def embed(self, text: str) -> List[float]:
        ...

    async def score_importance(self, text: str, context: Optional[PromptContext]) -> int:
        ...

    async def synthesize_reflection(
        self, memories: Sequence[MemoryRecord], context: PromptContext
    ) -> ReflectionInsight:
        ...

    async def generate_plan(self, granularity: PlanGranularity, context: PromptContext) -> PlanDraft:
        ...

    async def generate_utterance(
        self, speaker_context: PromptContext, history: Sequence[DialogueMessage]
    ) -> Utterance:
        ...

    async def generate_action(self, context: PromptContext) -> ActionDecision:
        ...


@dataclass
class CognitionOutcome(Generic[T]):
    """Typed result of one gateway call."""

    operation: str
    value: T
    fallback: Optional[Fallback] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.fallback is None


class CognitionGateway:
    """Timeout, retry and fallback policy around a :class:`CognitionService`."""

    def __init__(
        self,
        service: CognitionService,
        *,
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 10.0,
    ) -> None:
        self.service = service
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.calls: Counter[str] = Counter()
        self.fallbacks: Counter[str] = Counter()

    async def _call(
        self,
        operation: str,
        factory: Callable[[], Awaitable[Any]],
        *,
        fallback: T,
        fallback_name: Fallback,
        validate: Callable[[Any], T],
    ) -> CognitionOutcome[T]:
        self.calls[operation] += 1
        attempt_number = 0
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((TransientCognitionError, asyncio.TimeoutError, ConnectionError)),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            ):
                with attempt:
                    attempt_number += 1
                    if attempt_number > 1:
                        logger.info("%s [COGNITION] retry %d/%d for %s", LOG_TAG_LLM, attempt_number,
                                    self.max_attempts, operation)
                    raw = await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
                    return CognitionOutcome(operation=operation, value=validate(raw))
        except RetryError as exc:
            error: BaseException = exc.last_attempt.exception() or exc
        except Exception as exc:  # noqa: BLE001 - every failure maps to the fallback
            error = exc

        self.fallbacks[operation] += 1
        logger.warning(
            "%s [COGNITION] %s failed after %d attempt(s) (%s: %s); using %s",
            LOG_TAG_ERROR, operation, attempt_number, type(error).__name__, error, fallback_name.value,
        )
        return CognitionOutcome(operation=operation, value=fallback, fallback=fallback_name, error=error)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> CognitionOutcome[Optional[List[float]]]:
        def validate(raw: Any) -> List[float]:
            vector = [float(v) for v in raw]
            if not vector:
                raise ValueError("empty embedding")
            return vector

        return await self._call(
            "embed",
            lambda: self.service.embed(text),
            fallback=None,
            fallback_name=Fallback.NO_EMBEDDING,
            validate=validate,
        )

    async def score_importance(self, text: str, context: Optional[PromptContext] = None) -> CognitionOutcome[int]:
        return await self._call(
            "score_importance",
            lambda: self.service.score_importance(text, context),
            fallback=DEFAULT_IMPORTANCE,
            fallback_name=Fallback.DEFAULT_IMPORTANCE,
            validate=clamp_importance,
        )

    async def synthesize_reflection(
        self, memories: Sequence[MemoryRecord], context: PromptContext
    ) -> CognitionOutcome[Optional[ReflectionInsight]]:
        def validate(raw: Any) -> ReflectionInsight:
            insight = ReflectionInsight.model_validate(raw)
            if not insight.insight.strip():
                raise ValueError("empty insight")
            return insight

        return await self._call(
            "synthesize_reflection",
            lambda: self.service.synthesize_reflection(memories, context),
            fallback=None,
            fallback_name=Fallback.NO_REFLECTION,
            validate=validate,
        )

    async def generate_plan(
        self, granularity: PlanGranularity, context: PromptContext, *, fallback: Sequence[str]
    ) -> CognitionOutcome[PlanDraft]:
        def validate(raw: Any) -> PlanDraft:
            draft = PlanDraft.model_validate(raw)
            items = [item.strip() for item in draft.items if item and item.strip()]
            if not items:
                raise ValueError(f"empty {granularity.value} plan")
            return PlanDraft(granularity=granularity, items=items)

        return await self._call(
            f"generate_plan:{granularity.value}",
            lambda: self.service.generate_plan(granularity, context),
            fallback=PlanDraft(granularity=granularity, items=list(fallback)),
            fallback_name=Fallback.DEFAULT_PLAN,
            validate=validate,
        )

    async def generate_utterance(
        self,
        speaker_context: PromptContext,
        history: Sequence[DialogueMessage],
        *,
        fallback: Utterance,
    ) -> CognitionOutcome[Utterance]:
        def validate(raw: Any) -> Utterance:
            utterance = Utterance.model_validate(raw)
            if not utterance.content.strip():
                raise ValueError("empty utterance")
            return utterance

        return await self._call(
            "generate_utterance",
            lambda: self.service.generate_utterance(speaker_context, list(history)),
            fallback=fallback,
            fallback_name=Fallback.CANNED_UTTERANCE,
            validate=validate,
        )

    async def generate_action(self, context: PromptContext) -> CognitionOutcome[ActionDecision]:
        return await self._call(
            "generate_action",
            lambda: self.service.generate_action(context),
            fallback=DEFAULT_ACTION.model_copy(),
            fallback_name=Fallback.DEFAULT_ACTION,
            validate=ActionDecision.model_validate,
        )

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {op: {"calls": n, "fallbacks": self.fallbacks.get(op, 0)} for op, n in self.calls.items()}
