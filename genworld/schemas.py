"""
Pydantic schemas for the genworld engine.

All data structures shared between the clock, event queue, memory, cognition
and simulation loop are defined here. Models are plain data: behaviour lives in
the component modules that own each record.
"""

from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def new_id() -> str:
    return str(uuid4())


def clamp_importance(value: Any) -> int:
    """Round and clamp an importance rating into the 1-10 range."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"importance must be numeric, got {value!r}") from None
    return int(min(10, max(1, round(number))))


# ============================================================================
# Clock
# ============================================================================

class DayPhase(str, Enum):
    DAWN = "dawn"
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class SimulatedClockState(BaseModel):
    """Snapshot of the clock returned by ``SimulationClock.get_state``."""

    wall_clock_origin: Optional[float] = Field(None, description="Monotonic wall time of first start")
    simulated_time: datetime
    multiplier: float
    tick_rate_hz: float
    paused: bool
    ticks_elapsed: int = 0
    # Simulated seconds accumulated but not yet drained into simulated_time
    remainder_seconds: float = 0.0


class TimeOfDay(BaseModel):
    hour: int
    minute: int
    phase: DayPhase
    is_daytime: bool


class TickSignal(BaseModel):
    """Payload emitted by the clock on every tick."""

    simulated_time: datetime
    ticks_elapsed: int = Field(..., description="Ticks emitted since the clock was created")
    delta_simulated: timedelta


# ============================================================================
# Events
# ============================================================================

class EventKind(str, Enum):
    AGENT_ACTION = "agent_action"
    WORLD_EVENT = "world_event"
    SCHEDULED = "scheduled"
    USER_INTERVENTION = "user_intervention"
    SYSTEM = "system"


class EventPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class RecurrenceRule(BaseModel):
    interval: timedelta
    end_at: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(None, ge=1)

    @field_validator("interval")
    @classmethod
    def _positive_interval(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("recurrence interval must be positive")
        return value


class ScheduledEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: EventKind
    due_at: datetime
    priority: EventPriority = EventPriority.NORMAL
    payload: Dict[str, Any] = Field(default_factory=dict)
    recurrence: Optional[RecurrenceRule] = None
    # 1-based occurrence index for recurring events, 0 for one-shot events
    occurrence: int = 0


# ============================================================================
# Memory
# ============================================================================

class MemoryKind(str, Enum):
    OBSERVATION = "observation"
    REFLECTION = "reflection"
    PLAN = "plan"
    ACTION = "action"
    DIALOGUE = "dialogue"


class MemoryRecord(BaseModel):
    """One entry in an agent's append-only memory log."""

    id: str = Field(default_factory=new_id)
    agent_id: str
    world_id: str
    kind: MemoryKind = MemoryKind.OBSERVATION
    content: str
    created_at: datetime
    importance: int = Field(5, description="Significance rating, clamped to 1-10")
    last_accessed_at: datetime
    related_memory_ids: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int:
        return clamp_importance(value)


class ScoredMemory(BaseModel):
    memory: MemoryRecord
    score: float
    relevance: float
    recency: float
    importance: float


# ============================================================================
# Agents
# ============================================================================

class Location(BaseModel):
    x: float = 0.0
    y: float = 0.0
    area: str


class AgentPlan(BaseModel):
    daily_plan: List[str] = Field(default_factory=list)
    hourly_plan: List[str] = Field(default_factory=list)
    current_step: Optional[str] = None
    # Daily activity the hourly plan currently decomposes
    active_activity: Optional[str] = None


class AgentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


class Agent(BaseModel):
    id: str = Field(default_factory=new_id)
    world_id: str
    name: str
    description: str = ""
    location: Location
    current_action: Optional[str] = None
    # agent_id -> relationship label (stranger, acquaintance, friend, ...)
    relationships: Dict[str, str] = Field(default_factory=dict)
    goals: List[str] = Field(default_factory=list)
    traits: List[str] = Field(default_factory=list)
    plan: AgentPlan = Field(default_factory=AgentPlan)
    status: AgentStatus = AgentStatus.ACTIVE

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("agent name must not be empty")
        return value


# ============================================================================
# Dialogue
# ============================================================================

class DialogueMessage(BaseModel):
    speaker_id: str
    content: str
    timestamp: datetime
    emotion: Optional[str] = None
    intent: Optional[str] = None


class Dialogue(BaseModel):
    id: str = Field(default_factory=new_id)
    participant_ids: List[str]
    world_id: str
    location: str = Field(..., description="Area in which the dialogue takes place")
    started_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    messages: List[DialogueMessage] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


# ============================================================================
# World state
# ============================================================================

class WorldObject(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    location: Location
    properties: Dict[str, Any] = Field(default_factory=dict)


class Area(BaseModel):
    name: str
    description: str = ""
    # Centre point agents are placed at when they move here
    x: float = 0.0
    y: float = 0.0
    connections: List[str] = Field(default_factory=list)


class Weather(BaseModel):
    condition: str = "clear"
    temperature: float = 20.0


class GlobalEffect(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str
    started_at: datetime
    expires_at: Optional[datetime] = None
    area: Optional[str] = None


class WorldEventRecord(BaseModel):
    """A folded event that agents can observe on the tick it happened."""

    id: str = Field(default_factory=new_id)
    kind: EventKind
    description: str
    at: datetime
    area: Optional[str] = Field(None, description="None means world-wide")
    agent_ids: List[str] = Field(default_factory=list)


class WorldState(BaseModel):
    world_id: str
    version: int = 0
    current_time: datetime
    day_phase: DayPhase = DayPhase.MORNING
    weather: Weather = Field(default_factory=Weather)
    agents: Dict[str, Agent] = Field(default_factory=dict)
    objects: Dict[str, WorldObject] = Field(default_factory=dict)
    locations: Dict[str, Area] = Field(default_factory=dict)
    # agent_id -> {other_agent_id -> label}, mirrored into Agent.relationships
    relationships: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    active_dialogues: Dict[str, Dialogue] = Field(default_factory=dict)
    global_effects: List[GlobalEffect] = Field(default_factory=list)
    recent_events: List[WorldEventRecord] = Field(default_factory=list)
    # agent_id -> observations injected by user interventions, consumed once
    pending_observations: Dict[str, List[str]] = Field(default_factory=dict)


# ============================================================================
# Cognition results
# ============================================================================

class PlanGranularity(str, Enum):
    DAILY = "daily"
    HOURLY = "hourly"
    MINUTE = "minute"


class ReflectionInsight(BaseModel):
    insight: str = Field(..., description="One-sentence high-level insight")
    evidence_ids: List[str] = Field(default_factory=list, description="Source memory ids")
    importance: int = Field(7, description="Importance of the insight (1-10)")

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int:
        return clamp_importance(value)


class PlanDraft(BaseModel):
    granularity: PlanGranularity
    items: List[str] = Field(..., description="Ordered plan entries")


class Utterance(BaseModel):
    content: str
    emotion: Optional[str] = Field(None, description="e.g. happy, friendly, sad, angry, neutral")
    intent: Optional[str] = Field(None, description="e.g. greeting, question, statement, farewell")


class ActionDecision(BaseModel):
    action_type: str = Field(..., description="move, interact, communicate, observe, reflect, plan")
    target: Optional[str] = Field(None, description="Area name, object id or agent id")
    content: str = Field(..., description="Short description of the action")
    reasoning: Optional[str] = None


# ============================================================================
# Loop output
# ============================================================================

class AgentError(BaseModel):
    agent_id: str
    stage: str
    error_type: str
    message: str


class TickResult(BaseModel):
    tick: int
    simulated_time: datetime
    processed: int = 0
    errors: List[AgentError] = Field(default_factory=list)
    events_applied: List[str] = Field(default_factory=list)
    version: int = 0
    duration_ms: float = 0.0

    @property
    def healthy(self) -> bool:
        return not self.errors


class ChangeNotification(BaseModel):
    world_id: str
    current_time: datetime
    agents: List[Agent]
    version: int
