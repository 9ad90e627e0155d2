"""
genworld configuration

Loads configuration from environment variables with sensible defaults and
exposes the validated engine settings as a pydantic model.
"""

import os
from typing import Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load .env file if it exists
load_dotenv()


def _weights_from_env(raw: str) -> Tuple[float, float, float]:
    parts = [float(p) for p in raw.split(",") if p.strip()]
    if len(parts) != 3:
        raise ValueError(f"RETRIEVAL_WEIGHTS must have three comma separated values, got {raw!r}")
    return parts[0], parts[1], parts[2]


class Config:
    """Application configuration loaded from environment variables."""

    # Cognition Service (LLM) configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    COGNITION_TIMEOUT_SECONDS: float = float(os.getenv("COGNITION_TIMEOUT_SECONDS", "30"))
    COGNITION_MAX_ATTEMPTS: int = int(os.getenv("COGNITION_MAX_ATTEMPTS", "3"))

    # API Keys
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")

    # Persistent store
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/genworld")
    STORE_MAX_ATTEMPTS: int = int(os.getenv("STORE_MAX_ATTEMPTS", "3"))
    STORE_BACKOFF_SECONDS: float = float(os.getenv("STORE_BACKOFF_SECONDS", "1.0"))
    STORE_TIMEOUT_SECONDS: float = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))

    # Simulation
    TICK_RATE_HZ: float = float(os.getenv("TICK_RATE_HZ", "1"))
    TIME_MULTIPLIER: float = float(os.getenv("TIME_MULTIPLIER", "60"))
    BATCH_SIZE: int = int(os.getenv("BATCH_SIZE", "10"))
    MAX_CONCURRENT_AGENTS: int = int(os.getenv("MAX_CONCURRENT_AGENTS", "5"))
    AGENT_TIMEOUT_SECONDS: float = float(os.getenv("AGENT_TIMEOUT_SECONDS", "60"))

    # Cognition tuning
    REFLECTION_THRESHOLD: int = int(os.getenv("REFLECTION_THRESHOLD", "150"))
    REFLECTION_WINDOW_HOURS: float = float(os.getenv("REFLECTION_WINDOW_HOURS", "24"))
    RECENCY_HALF_LIFE_HOURS: float = float(os.getenv("RECENCY_HALF_LIFE_HOURS", "24"))
    RETRIEVAL_WEIGHTS: str = os.getenv("RETRIEVAL_WEIGHTS", "1,1,1")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if required values are missing."""
        if cls.LLM_PROVIDER == "anthropic" and not cls.ANTHROPIC_API_KEY:
            raise ValueError("ANTHROPIC_API_KEY is required when using the 'anthropic' provider")

        if cls.LLM_PROVIDER == "openai" and not cls.OPENAI_API_KEY:
            raise ValueError(
                "OPENAI_API_KEY is required when using the 'openai' provider. "
                "Use OfflineCognitionService to run without a model."
            )

        if cls.TICK_RATE_HZ <= 0:
            raise ValueError("TICK_RATE_HZ must be positive")

        _weights_from_env(cls.RETRIEVAL_WEIGHTS)

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "genworld configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  LLM Model: {cls.LLM_MODEL}",
            f"  Database: {cls.DATABASE_URL}",
            f"  Tick rate: {cls.TICK_RATE_HZ} Hz x{cls.TIME_MULTIPLIER}",
            f"  Batches: {cls.BATCH_SIZE} agents, {cls.MAX_CONCURRENT_AGENTS} concurrent",
            f"  Reflection: >= {cls.REFLECTION_THRESHOLD} over {cls.REFLECTION_WINDOW_HOURS}h",
        ]
        return "\n".join(lines)


class SimulationConfig(BaseModel):
    """Validated engine settings shared by the clock, pipeline and loop."""

    # Clock
    tick_rate_hz: float = Field(1.0, gt=0, description="Wall-clock ticks per second")
    multiplier: float = Field(60.0, gt=0, description="Simulated seconds per wall-clock second")
    resolution_seconds: float = Field(1.0, gt=0, description="Simulated quantum drained per tick")

    # Agent processing
    batch_size: int = Field(10, ge=1)
    max_concurrent_agents: int = Field(5, ge=1)
    agent_timeout_seconds: float = Field(60.0, gt=0)

    # Memory retrieval
    retrieval_weights: Tuple[float, float, float] = Field(
        (1.0, 1.0, 1.0), description="(relevance, recency, importance) weights"
    )
    recency_half_life_hours: float = Field(24.0, gt=0)
    retrieval_top_n: int = Field(20, ge=1)

    # Reflection
    reflection_threshold: int = Field(150, ge=1)
    reflection_window_hours: float = Field(24.0, gt=0)
    reflection_min_memories: int = Field(3, ge=1)

    # Dialogue
    max_dialogue_turns: int = Field(4, ge=1)
    nearby_radius: float = Field(50.0, gt=0)

    # Collaborator resilience
    cognition_timeout_seconds: float = Field(30.0, gt=0)
    cognition_max_attempts: int = Field(3, ge=1)
    cognition_backoff_seconds: float = Field(0.5, ge=0)

    tick_history: int = Field(100, ge=1, description="Rolling window for tick duration stats")

    @field_validator("retrieval_weights")
    @classmethod
    def _non_negative_weights(cls, value: Tuple[float, float, float]) -> Tuple[float, float, float]:
        if any(w < 0 for w in value):
            raise ValueError("retrieval weights must be non-negative")
        return value

    @classmethod
    def from_env(cls) -> "SimulationConfig":
        """Build settings from :class:`Config` (environment / .env)."""
        return cls(
            tick_rate_hz=Config.TICK_RATE_HZ,
            multiplier=Config.TIME_MULTIPLIER,
            batch_size=Config.BATCH_SIZE,
            max_concurrent_agents=Config.MAX_CONCURRENT_AGENTS,
            agent_timeout_seconds=Config.AGENT_TIMEOUT_SECONDS,
            retrieval_weights=_weights_from_env(Config.RETRIEVAL_WEIGHTS),
            recency_half_life_hours=Config.RECENCY_HALF_LIFE_HOURS,
            reflection_threshold=Config.REFLECTION_THRESHOLD,
            reflection_window_hours=Config.REFLECTION_WINDOW_HOURS,
            cognition_timeout_seconds=Config.COGNITION_TIMEOUT_SECONDS,
            cognition_max_attempts=Config.COGNITION_MAX_ATTEMPTS,
        )
