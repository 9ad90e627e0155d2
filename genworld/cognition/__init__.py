"""Agent cognition for genworld.

This package holds everything that asks the Cognition Service for a judgement
(importance, reflection, plans, utterances, actions) and the logic that
decides when to ask. Every service call goes through ``CognitionGateway``,
which adds timeouts, retries and named fallbacks.
"""

from .context import PromptContext, build_prompt_context
from .prompts import PromptLibrary, PromptTemplate, DEFAULT_PROMPTS, GRANULARITY_INSTRUCTIONS
from .renderers import render_prompt, RenderedPrompt
from .service import (
    CognitionService,
    CognitionGateway,
    CognitionOutcome,
    Fallback,
    DEFAULT_ACTION,
    DEFAULT_DAILY_PLAN,
    DEFAULT_IMPORTANCE,
)
from .offline import OfflineCognitionService, hashed_embedding, parse_step
from .llm import LLMCognitionService
from .reflection import ReflectionTrigger, ReflectionCandidates
from .planner import Planner, PlanCadence, PlanRefresh, is_salient, should_replan
from .dialogue import (
    DialogueCoordinator,
    classify_sentiment,
    extract_topics,
    shift_relationship,
)

__all__ = [
    "PromptContext",
    "build_prompt_context",
    "PromptLibrary",
    "PromptTemplate",
    "DEFAULT_PROMPTS",
    "GRANULARITY_INSTRUCTIONS",
    "render_prompt",
    "RenderedPrompt",
    "CognitionService",
    "CognitionGateway",
    "CognitionOutcome",
    "Fallback",
    "DEFAULT_ACTION",
    "DEFAULT_DAILY_PLAN",
    "DEFAULT_IMPORTANCE",
    "OfflineCognitionService",
    "hashed_embedding",
    "parse_step",
    "LLMCognitionService",
    "ReflectionTrigger",
    "ReflectionCandidates",
    "Planner",
    "PlanCadence",
    "PlanRefresh",
    "is_salient",
    "should_replan",
    "DialogueCoordinator",
    "classify_sentiment",
    "extract_topics",
    "shift_relationship",
]
