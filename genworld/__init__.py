"""
genworld - a tick-driven engine for generative agent worlds.

Agents observe, remember, reflect, plan, act and talk on every tick of a
simulated clock that runs at a configurable multiple of wall time.

No file I/O required. No database required.
The store and the Cognition Service are injected by the user.
"""

__version__ = "0.1.0"

# Main simulation components
from .orchestrator import SimulationLoop, LoopState
from .pipeline import AgentPipeline
from .clock import SimulationClock, ClockSignal, TimeSkipped
from .events import EventQueue, parse_interval, parse_event_time
from .world_state import WorldStateManager

# Core interfaces
from .config import Config, SimulationConfig
from .persistence import StoreStrategy, InMemoryStore, PostgresStore, RetryingStore
from .memory import MemoryStream, RetrievalWeights
from .cognition import (
    CognitionService,
    CognitionGateway,
    OfflineCognitionService,
    LLMCognitionService,
    PromptContext,
    PromptLibrary,
    DEFAULT_PROMPTS,
    ReflectionTrigger,
    Planner,
    DialogueCoordinator,
)
from .errors import (
    GenworldError,
    ClockConfigurationError,
    ClockError,
    InvalidScheduleError,
    WorldStateError,
    DialogueError,
    StoreError,
    StoreUnavailableError,
    CognitionError,
    AgentProcessingError,
)
from .logging_utils import configure_logging, get_logger

# Core schemas
from .schemas import (
    Agent,
    AgentPlan,
    AgentStatus,
    Area,
    Dialogue,
    DialogueMessage,
    EventKind,
    EventPriority,
    Location,
    MemoryKind,
    MemoryRecord,
    ScheduledEvent,
    TickResult,
    TickSignal,
    Weather,
    WorldObject,
    WorldState,
    ChangeNotification,
)

__all__ = [
    # Main classes
    "SimulationLoop",
    "LoopState",
    "AgentPipeline",
    "SimulationClock",
    "ClockSignal",
    "TimeSkipped",
    "EventQueue",
    "parse_interval",
    "parse_event_time",
    "WorldStateManager",
    # Core interfaces
    "Config",
    "SimulationConfig",
    "StoreStrategy",
    "InMemoryStore",
    "PostgresStore",
    "RetryingStore",
    "MemoryStream",
    "RetrievalWeights",
    "CognitionService",
    "CognitionGateway",
    "OfflineCognitionService",
    "LLMCognitionService",
    "PromptContext",
    "PromptLibrary",
    "DEFAULT_PROMPTS",
    "ReflectionTrigger",
    "Planner",
    "DialogueCoordinator",
    # Errors
    "GenworldError",
    "ClockConfigurationError",
    "ClockError",
    "InvalidScheduleError",
    "WorldStateError",
    "DialogueError",
    "StoreError",
    "StoreUnavailableError",
    "CognitionError",
    "AgentProcessingError",
    # Logging
    "configure_logging",
    "get_logger",
    # Schemas
    "Agent",
    "AgentPlan",
    "AgentStatus",
    "Area",
    "Dialogue",
    "DialogueMessage",
    "EventKind",
    "EventPriority",
    "Location",
    "MemoryKind",
    "MemoryRecord",
    "ScheduledEvent",
    "TickResult",
    "TickSignal",
    "Weather",
    "WorldObject",
    "WorldState",
    "ChangeNotification",
]
