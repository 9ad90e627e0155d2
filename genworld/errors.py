"""Exception hierarchy for genworld.

Validation problems are raised synchronously at the API boundary. Collaborator
failures are split into transient (retryable) and terminal variants so call
sites can decide between retrying and falling back.
"""

from typing import Optional


class GenworldError(Exception):
    """Base class for every error raised by the engine."""


# =============================
# Clock
# =============================

class ClockConfigurationError(GenworldError):
    """Raised when a clock is constructed with an unusable configuration.

    These are scheduler-fatal: the clock refuses to exist rather than start in a
    broken state.
    """

    def __init__(self, *, field: str, value: object, reason: str) -> None:
        self.field = field
        self.value = value
        message = (
            f"Invalid clock configuration: {field}={value!r} ({reason}).\n\n"
            "Remediation tips:\n"
            "  - TICK_RATE_HZ must be a positive number (e.g. 10)\n"
            "  - TIME_MULTIPLIER must be a positive number (e.g. 60 for 1 min/s)"
        )
        super().__init__(message)


class ClockError(GenworldError):
    """Raised for invalid runtime clock requests (non-positive speed or skip)."""


# =============================
# Scheduling
# =============================

class InvalidScheduleError(GenworldError):
    """Raised when an event time or recurrence interval cannot be parsed."""

    def __init__(self, value: object, reason: str) -> None:
        self.value = value
        super().__init__(f"Invalid schedule value {value!r}: {reason}")


# =============================
# World / dialogue
# =============================

class WorldStateError(GenworldError):
    """Raised when a world-state mutation references unknown entities."""


class DialogueError(GenworldError):
    """Raised when a dialogue precondition fails or a dialogue is unknown."""


# =============================
# Collaborators
# =============================

class StoreError(GenworldError):
    """Base class for persistent store failures."""


class TransientStoreError(StoreError):
    """A store call failed in a way that may succeed on retry (timeout, 5xx)."""


class StoreUnavailableError(StoreError):
    """Raised once retries against the store are exhausted."""

    def __init__(self, *, operation: str, attempts: int, underlying: Optional[BaseException]) -> None:
        self.operation = operation
        self.attempts = attempts
        self.underlying = underlying
        message = (
            f"Store operation '{operation}' failed after {attempts} attempt(s): {underlying}\n\n"
            "Remediation tips:\n"
            "  - Check DATABASE_URL and that the database is reachable\n"
            "  - Raise STORE_MAX_ATTEMPTS for flaky networks"
        )
        super().__init__(message)


class CognitionError(GenworldError):
    """Base class for Cognition Service failures."""


class TransientCognitionError(CognitionError):
    """A cognition call failed in a way that may succeed on retry."""


class AgentProcessingError(GenworldError):
    """Wraps an exception raised while running one agent's pipeline."""

    def __init__(self, *, agent_id: str, stage: str, underlying: BaseException) -> None:
        self.agent_id = agent_id
        self.stage = stage
        self.underlying = underlying
        super().__init__(f"Agent {agent_id} failed during {stage}: {underlying}")
