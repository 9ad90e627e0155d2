"""
StoreStrategy interface for the persistent store collaborator.

The engine only needs point lookups and range queries keyed by world/agent id,
with per-record atomic upserts. Two backends are included:

1. InMemoryStore - dict-based storage, data lost on exit (tests, prototyping)
2. PostgresStore - asyncpg pool with one JSONB document per record

Every backend is expected to be fallible. ``RetryingStore`` wraps any backend
with a per-call timeout and exponential-backoff retries on transient failures,
raising ``StoreUnavailableError`` once attempts are exhausted.

Usage pattern:
    store = RetryingStore(PostgresStore(Config.DATABASE_URL))
    await store.initialize()
    await store.save_agent(agent)
    await store.close()
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

import asyncpg
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Config
from .errors import StoreUnavailableError, TransientStoreError
from .logging_utils import LOG_TAG_ERROR, get_logger
from .schemas import Agent, AgentStatus, Dialogue, MemoryRecord, WorldEventRecord, WorldState

logger = get_logger("persistence")

T = TypeVar("T")


class StoreStrategy(ABC):
    """Abstract CRUD contract used by the engine."""

    async def initialize(self) -> None:
        """Open connections / create tables. Default is a no-op."""

    async def close(self) -> None:
        """Release resources. Default is a no-op."""

    # World ------------------------------------------------------------

    @abstractmethod
    async def save_world(self, state: WorldState) -> None:
        """Persist a committed world snapshot (latest version wins)."""

    @abstractmethod
    async def load_world(self, world_id: str) -> Optional[WorldState]:
        """Return the most recently saved snapshot for ``world_id``."""

    @abstractmethod
    async def save_world_event(self, world_id: str, record: WorldEventRecord) -> None:
        pass

    @abstractmethod
    async def list_world_events(self, world_id: str, limit: int = 50) -> List[WorldEventRecord]:
        pass

    # Agents -----------------------------------------------------------

    @abstractmethod
    async def save_agent(self, agent: Agent) -> None:
        pass

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        pass

    @abstractmethod
    async def list_agents(self, world_id: str, status: Optional[AgentStatus] = None) -> List[Agent]:
        pass

    # Memories ---------------------------------------------------------

    @abstractmethod
    async def save_memory(self, memory: MemoryRecord) -> None:
        """Insert or update a memory record."""

    @abstractmethod
    async def get_memory(self, memory_id: str) -> Optional[MemoryRecord]:
        pass

    @abstractmethod
    async def list_memories(self, agent_id: str, since: Optional[datetime] = None) -> List[MemoryRecord]:
        """Return an agent's memories ordered by ``created_at`` ascending."""

    # Dialogues --------------------------------------------------------

    @abstractmethod
    async def save_dialogue(self, dialogue: Dialogue) -> None:
        pass

    @abstractmethod
    async def get_dialogue(self, dialogue_id: str) -> Optional[Dialogue]:
        pass

    @abstractmethod
    async def list_dialogues(self, world_id: str) -> List[Dialogue]:
        pass


class InMemoryStore(StoreStrategy):
    """Dict-backed store. Records are copied in and out so callers cannot alias them."""

    def __init__(self) -> None:
        self.worlds: Dict[str, WorldState] = {}
        self.world_events: Dict[str, List[WorldEventRecord]] = {}
        self.agents: Dict[str, Agent] = {}
        self.memories: Dict[str, MemoryRecord] = {}
        self.dialogues: Dict[str, Dialogue] = {}

    async def close(self) -> None:
        """No-op: data survives close so callers can read it after a run."""
        return None

    def clear(self) -> None:
        self.worlds.clear()
        self.world_events.clear()
        self.agents.clear()
        self.memories.clear()
        self.dialogues.clear()

    async def save_world(self, state: WorldState) -> None:
        current = self.worlds.get(state.world_id)
        if current is None or current.version <= state.version:
            self.worlds[state.world_id] = state.model_copy(deep=True)

    async def load_world(self, world_id: str) -> Optional[WorldState]:
        state = self.worlds.get(world_id)
        return state.model_copy(deep=True) if state else None

    async def save_world_event(self, world_id: str, record: WorldEventRecord) -> None:
        self.world_events.setdefault(world_id, []).append(record.model_copy())

    async def list_world_events(self, world_id: str, limit: int = 50) -> List[WorldEventRecord]:
        return [r.model_copy() for r in self.world_events.get(world_id, [])[-limit:]]

    async def save_agent(self, agent: Agent) -> None:
        self.agents[agent.id] = agent.model_copy(deep=True)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self.agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_agents(self, world_id: str, status: Optional[AgentStatus] = None) -> List[Agent]:
        return [
            a.model_copy(deep=True)
            for a in self.agents.values()
            if a.world_id == world_id and (status is None or a.status == status)
        ]

    async def save_memory(self, memory: MemoryRecord) -> None:
        self.memories[memory.id] = memory.model_copy(deep=True)

    async def get_memory(self, memory_id: str) -> Optional[MemoryRecord]:
        memory = self.memories.get(memory_id)
        return memory.model_copy(deep=True) if memory else None

    async def list_memories(self, agent_id: str, since: Optional[datetime] = None) -> List[MemoryRecord]:
        records = [
            m.model_copy(deep=True)
            for m in self.memories.values()
            if m.agent_id == agent_id and (since is None or m.created_at >= since)
        ]
        records.sort(key=lambda m: m.created_at)
        return records

    async def save_dialogue(self, dialogue: Dialogue) -> None:
        self.dialogues[dialogue.id] = dialogue.model_copy(deep=True)

    async def get_dialogue(self, dialogue_id: str) -> Optional[Dialogue]:
        dialogue = self.dialogues.get(dialogue_id)
        return dialogue.model_copy(deep=True) if dialogue else None

    async def list_dialogues(self, world_id: str) -> List[Dialogue]:
        return [d.model_copy(deep=True) for d in self.dialogues.values() if d.world_id == world_id]


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS worlds (
    world_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    doc JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS world_events (
    id TEXT PRIMARY KEY,
    world_id TEXT NOT NULL,
    at TIMESTAMPTZ NOT NULL,
    doc JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    world_id TEXT NOT NULL,
    status TEXT NOT NULL,
    doc JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    doc JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS memories_agent_created ON memories (agent_id, created_at);
CREATE TABLE IF NOT EXISTS dialogues (
    id TEXT PRIMARY KEY,
    world_id TEXT NOT NULL,
    doc JSONB NOT NULL
);
"""

# asyncpg failures worth retrying; everything else is a programming/data error.
_TRANSIENT_PG_ERRORS: Tuple[type, ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
)


@contextlib.contextmanager
def _transient_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except _TRANSIENT_PG_ERRORS as exc:
        raise TransientStoreError(f"{operation}: {exc}") from exc


class PostgresStore(StoreStrategy):
    """PostgreSQL backend storing each record as a JSONB document.

    Documents are the pydantic ``model_dump_json`` output, so the schema stays
    stable as models gain optional fields. Index columns are duplicated out of
    the document for the range queries the engine performs.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or Config.DATABASE_URL
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self.pool is None:
            with _transient_errors("initialize"):
                self.pool = await asyncpg.create_pool(self.database_url)
                async with self.pool.acquire() as conn:
                    await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def _execute(self, operation: str, query: str, *args: Any) -> None:
        assert self.pool is not None, "Store not initialized"
        with _transient_errors(operation):
            async with self.pool.acquire() as conn:
                await conn.execute(query, *args)

    async def _fetch(self, operation: str, query: str, *args: Any) -> List[Any]:
        assert self.pool is not None, "Store not initialized"
        with _transient_errors(operation):
            async with self.pool.acquire() as conn:
                return list(await conn.fetch(query, *args))

    async def save_world(self, state: WorldState) -> None:
        query = """
            INSERT INTO worlds (world_id, version, doc) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (world_id) DO UPDATE SET version = $2, doc = $3::jsonb
            WHERE worlds.version <= $2
        """
        await self._execute("save_world", query, state.world_id, state.version, state.model_dump_json())

    async def load_world(self, world_id: str) -> Optional[WorldState]:
        rows = await self._fetch("load_world", "SELECT doc FROM worlds WHERE world_id = $1", world_id)
        return WorldState.model_validate_json(rows[0]["doc"]) if rows else None

    async def save_world_event(self, world_id: str, record: WorldEventRecord) -> None:
        query = """
            INSERT INTO world_events (id, world_id, at, doc) VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (id) DO NOTHING
        """
        await self._execute("save_world_event", query, record.id, world_id, record.at, record.model_dump_json())

    async def list_world_events(self, world_id: str, limit: int = 50) -> List[WorldEventRecord]:
        query = "SELECT doc FROM world_events WHERE world_id = $1 ORDER BY at DESC LIMIT $2"
        rows = await self._fetch("list_world_events", query, world_id, limit)
        return [WorldEventRecord.model_validate_json(r["doc"]) for r in reversed(rows)]

    async def save_agent(self, agent: Agent) -> None:
        query = """
            INSERT INTO agents (id, world_id, status, doc) VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (id) DO UPDATE SET status = $3, doc = $4::jsonb
        """
        await self._execute("save_agent", query, agent.id, agent.world_id, agent.status.value, agent.model_dump_json())

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        rows = await self._fetch("get_agent", "SELECT doc FROM agents WHERE id = $1", agent_id)
        return Agent.model_validate_json(rows[0]["doc"]) if rows else None

    async def list_agents(self, world_id: str, status: Optional[AgentStatus] = None) -> List[Agent]:
        if status is None:
            rows = await self._fetch("list_agents", "SELECT doc FROM agents WHERE world_id = $1", world_id)
        else:
            rows = await self._fetch(
                "list_agents",
                "SELECT doc FROM agents WHERE world_id = $1 AND status = $2",
                world_id,
                status.value,
            )
        return [Agent.model_validate_json(r["doc"]) for r in rows]

    async def save_memory(self, memory: MemoryRecord) -> None:
        query = """
            INSERT INTO memories (id, agent_id, created_at, doc) VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (id) DO UPDATE SET doc = $4::jsonb
        """
        await self._execute(
            "save_memory", query, memory.id, memory.agent_id, memory.created_at, memory.model_dump_json()
        )

    async def get_memory(self, memory_id: str) -> Optional[MemoryRecord]:
        rows = await self._fetch("get_memory", "SELECT doc FROM memories WHERE id = $1", memory_id)
        return MemoryRecord.model_validate_json(rows[0]["doc"]) if rows else None

    async def list_memories(self, agent_id: str, since: Optional[datetime] = None) -> List[MemoryRecord]:
        if since is None:
            query = "SELECT doc FROM memories WHERE agent_id = $1 ORDER BY created_at"
            rows = await self._fetch("list_memories", query, agent_id)
        else:
            query = "SELECT doc FROM memories WHERE agent_id = $1 AND created_at >= $2 ORDER BY created_at"
            rows = await self._fetch("list_memories", query, agent_id, since)
        return [MemoryRecord.model_validate_json(r["doc"]) for r in rows]

    async def save_dialogue(self, dialogue: Dialogue) -> None:
        query = """
            INSERT INTO dialogues (id, world_id, doc) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (id) DO UPDATE SET doc = $3::jsonb
        """
        await self._execute("save_dialogue", query, dialogue.id, dialogue.world_id, dialogue.model_dump_json())

    async def get_dialogue(self, dialogue_id: str) -> Optional[Dialogue]:
        rows = await self._fetch("get_dialogue", "SELECT doc FROM dialogues WHERE id = $1", dialogue_id)
        return Dialogue.model_validate_json(rows[0]["doc"]) if rows else None

    async def list_dialogues(self, world_id: str) -> List[Dialogue]:
        rows = await self._fetch("list_dialogues", "SELECT doc FROM dialogues WHERE world_id = $1", world_id)
        return [Dialogue.model_validate_json(r["doc"]) for r in rows]


class RetryingStore(StoreStrategy):
    """Wrap a backend with per-call timeouts and exponential-backoff retries.

    Only ``TransientStoreError`` and timeouts are retried. After
    ``max_attempts`` the call raises ``StoreUnavailableError``; other
    exceptions propagate unchanged on the first failure.
    """

    def __init__(
        self,
        inner: StoreStrategy,
        *,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        max_backoff_seconds: float = 30.0,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.inner = inner
        self.max_attempts = max_attempts or Config.STORE_MAX_ATTEMPTS
        self.backoff_seconds = Config.STORE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.timeout_seconds = timeout_seconds or Config.STORE_TIMEOUT_SECONDS

    async def _call(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        attempt_number = 0
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((TransientStoreError, asyncio.TimeoutError)),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            ):
                with attempt:
                    attempt_number += 1
                    if attempt_number > 1:
                        logger.warning(
                            "%s [STORE] retry %d/%d for %s", LOG_TAG_ERROR, attempt_number, self.max_attempts, operation
                        )
                    return await asyncio.wait_for(fn(*args), timeout=self.timeout_seconds)
        except RetryError as exc:
            underlying = exc.last_attempt.exception()
            logger.error("%s [STORE] %s gave up after %d attempts: %s", LOG_TAG_ERROR, operation, attempt_number, underlying)
            raise StoreUnavailableError(operation=operation, attempts=attempt_number, underlying=underlying) from underlying
        raise RuntimeError("Store retry mechanism exited unexpectedly")

    async def initialize(self) -> None:
        await self._call("initialize", self.inner.initialize)

    async def close(self) -> None:
        await self.inner.close()

    async def save_world(self, state: WorldState) -> None:
        await self._call("save_world", self.inner.save_world, state)

    async def load_world(self, world_id: str) -> Optional[WorldState]:
        return await self._call("load_world", self.inner.load_world, world_id)

    async def save_world_event(self, world_id: str, record: WorldEventRecord) -> None:
        await self._call("save_world_event", self.inner.save_world_event, world_id, record)

    async def list_world_events(self, world_id: str, limit: int = 50) -> List[WorldEventRecord]:
        return await self._call("list_world_events", self.inner.list_world_events, world_id, limit)

    async def save_agent(self, agent: Agent) -> None:
        await self._call("save_agent", self.inner.save_agent, agent)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self._call("get_agent", self.inner.get_agent, agent_id)

    async def list_agents(self, world_id: str, status: Optional[AgentStatus] = None) -> List[Agent]:
        return await self._call("list_agents", self.inner.list_agents, world_id, status)

    async def save_memory(self, memory: MemoryRecord) -> None:
        await self._call("save_memory", self.inner.save_memory, memory)

    async def get_memory(self, memory_id: str) -> Optional[MemoryRecord]:
        return await self._call("get_memory", self.inner.get_memory, memory_id)

    async def list_memories(self, agent_id: str, since: Optional[datetime] = None) -> List[MemoryRecord]:
        return await self._call("list_memories", self.inner.list_memories, agent_id, since)

    async def save_dialogue(self, dialogue: Dialogue) -> None:
        await self._call("save_dialogue", self.inner.save_dialogue, dialogue)

    async def get_dialogue(self, dialogue_id: str) -> Optional[Dialogue]:
        return await self._call("get_dialogue", self.inner.get_dialogue, dialogue_id)

    async def list_dialogues(self, world_id: str) -> List[Dialogue]:
        return await self._call("list_dialogues", self.inner.list_dialogues, world_id)
