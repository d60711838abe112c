"""Conversation history storage with in-memory and SQLite variants."""

from __future__ import annotations

import asyncio
import copy
import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, NewType, Sequence

import aiosqlite

from coding_agent.config import Config, get_config
from coding_agent.exceptions import PersistenceError, SessionError
from coding_agent.logging import get_logger

log = get_logger(__name__)

SessionID = NewType("SessionID", str)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

# Metadata key holding the provider response id used to resume a conversation.
PREVIOUS_RESPONSE_ID_KEY = "previous_response_id"

_MEMORY_DB = ":memory:"


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_session_id() -> SessionID:
    """Generate a new globally unique session id."""
    return SessionID(str(uuid.uuid4()))


def ensure_session_id(value: str | None) -> SessionID:
    """Validate a caller-supplied session id."""
    cleaned = str(value or "").strip()
    if not cleaned:
        raise SessionError("session id must not be empty")
    return SessionID(cleaned)


@dataclass(frozen=True)
class ToolCallRecord:
    """One tool invocation embedded in an assistant turn."""

    name: str
    arguments: str
    result: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "arguments": self.arguments, "result": self.result}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallRecord":
        return cls(
            name=str(data.get("name", "")),
            arguments=str(data.get("arguments", "")),
            result=str(data.get("result", "")),
        )


@dataclass
class ConversationTurn:
    """A user or assistant turn in a session log."""

    role: str  # "user", "assistant"
    content: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow_iso)

    def copy(self) -> "ConversationTurn":
        """Return a copy that shares no mutable state with this turn."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "role": self.role,
            "content": self.content,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }


@dataclass
class SessionSummary:
    """Aggregate view of one stored session."""

    session_id: SessionID
    turn_count: int
    last_activity: str


class Store(ABC):
    """Append-only, per-session log of conversation turns."""

    @abstractmethod
    async def list(self, session_id: SessionID) -> list[ConversationTurn]:
        """Return the session's turns in insertion order.

        Unknown sessions yield an empty list. The returned turns are copies.
        """

    async def append(self, session_id: SessionID, turn: ConversationTurn) -> None:
        """Add one turn at the end of the session's log."""
        await self.append_many(session_id, [turn])

    @abstractmethod
    async def append_many(self, session_id: SessionID, turns: Sequence[ConversationTurn]) -> None:
        """Add turns at the end of the session's log as one unit.

        Either every turn is stored, adjacent and in order, or none is.
        """

    @abstractmethod
    async def delete(self, session_id: SessionID) -> None:
        """Remove every turn of a session. Deleting an unknown session is not an error."""

    @abstractmethod
    async def list_sessions(self, limit: int = 10) -> list[SessionSummary]:
        """List the most recently active sessions."""

    async def close(self) -> None:
        """Release underlying resources."""
        return None


class InMemoryStore(Store):
    """Volatile store keeping turns in a dict guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[SessionID, list[ConversationTurn]] = {}
        self._activity: dict[SessionID, int] = {}
        self._counter = 0

    async def list(self, session_id: SessionID) -> list[ConversationTurn]:
        with self._lock:
            turns = self._data.get(session_id, [])
            return [turn.copy() for turn in turns]

    async def append_many(self, session_id: SessionID, turns: Sequence[ConversationTurn]) -> None:
        stored = [turn.copy() for turn in turns]
        if not stored:
            return
        with self._lock:
            self._data.setdefault(session_id, []).extend(stored)
            self._counter += 1
            self._activity[session_id] = self._counter

    async def delete(self, session_id: SessionID) -> None:
        with self._lock:
            self._data.pop(session_id, None)
            self._activity.pop(session_id, None)

    async def list_sessions(self, limit: int = 10) -> list[SessionSummary]:
        with self._lock:
            ordered = sorted(self._activity.items(), key=lambda item: item[1], reverse=True)
            return [
                SessionSummary(
                    session_id=session_id,
                    turn_count=len(self._data[session_id]),
                    last_activity=self._data[session_id][-1].created_at,
                )
                for session_id, _ in ordered[:limit]
            ]


def _encode_tool_calls(tool_calls: list[ToolCallRecord]) -> str | None:
    if not tool_calls:
        return None
    return json.dumps([call.to_dict() for call in tool_calls], ensure_ascii=False)


def _encode_metadata(metadata: dict[str, str]) -> str | None:
    if not metadata:
        return None
    return json.dumps(metadata, ensure_ascii=False)


def _decode_tool_calls(raw: str | None) -> list[ToolCallRecord]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise PersistenceError(f"failed to unmarshal tool_calls: {e}") from e
    if not isinstance(payload, list):
        raise PersistenceError("failed to unmarshal tool_calls: expected a JSON array")
    return [ToolCallRecord.from_dict(item) for item in payload]


def _decode_metadata(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise PersistenceError(f"failed to unmarshal metadata: {e}") from e
    if not isinstance(payload, dict):
        raise PersistenceError("failed to unmarshal metadata: expected a JSON object")
    return {str(key): str(value) for key, value in payload.items()}


class SQLiteStore(Store):
    """Durable store backed by a single SQLite table."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override (``":memory:"`` is accepted)
        """
        if db_path is None:
            db_path = get_config().session.path
        if str(db_path) == _MEMORY_DB:
            self.db_path: Path | None = None
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized. Caller must hold the lock."""
        if self._db is not None:
            return self._db
        target = str(self.db_path) if self.db_path is not None else _MEMORY_DB
        try:
            db = await aiosqlite.connect(target)
            await db.executescript("""
                CREATE TABLE IF NOT EXISTS conversation_turns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    tool_calls TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_conversation_turns_session_id
                    ON conversation_turns(session_id);
            """)
            await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"failed to open database {target}: {e}") from e
        self._db = db
        log.debug("Opened conversation store", path=target)
        return db

    async def list(self, session_id: SessionID) -> list[ConversationTurn]:
        async with self._lock:
            db = await self._ensure_db()
            try:
                async with db.execute(
                    """
                    SELECT role, content, tool_calls, metadata, created_at
                    FROM conversation_turns
                    WHERE session_id = ?
                    ORDER BY id ASC
                    """,
                    (str(session_id),),
                ) as cursor:
                    rows = await cursor.fetchall()
            except aiosqlite.Error as e:
                raise PersistenceError(f"failed to query turns: {e}") from e

        return [
            ConversationTurn(
                role=row[0],
                content=row[1],
                tool_calls=_decode_tool_calls(row[2]),
                metadata=_decode_metadata(row[3]),
                created_at=row[4],
            )
            for row in rows
        ]

    async def append_many(self, session_id: SessionID, turns: Sequence[ConversationTurn]) -> None:
        rows = [
            (
                str(session_id),
                turn.role,
                turn.content,
                _encode_tool_calls(turn.tool_calls),
                _encode_metadata(turn.metadata),
                turn.created_at,
            )
            for turn in turns
        ]
        if not rows:
            return
        async with self._lock:
            db = await self._ensure_db()
            try:
                # One transaction: a failed row discards the rows before it.
                await db.executemany(
                    """
                    INSERT INTO conversation_turns (session_id, role, content, tool_calls, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise PersistenceError(f"failed to insert turns: {e}") from e

    async def delete(self, session_id: SessionID) -> None:
        async with self._lock:
            db = await self._ensure_db()
            try:
                await db.execute(
                    "DELETE FROM conversation_turns WHERE session_id = ?",
                    (str(session_id),),
                )
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise PersistenceError(f"failed to delete session: {e}") from e
        log.info("Deleted session", session_id=session_id)

    async def list_sessions(self, limit: int = 10) -> list[SessionSummary]:
        async with self._lock:
            db = await self._ensure_db()
            try:
                async with db.execute(
                    """
                    SELECT session_id, COUNT(*), MAX(created_at)
                    FROM conversation_turns
                    GROUP BY session_id
                    ORDER BY MAX(id) DESC
                    LIMIT ?
                    """,
                    (limit,),
                ) as cursor:
                    rows = await cursor.fetchall()
            except aiosqlite.Error as e:
                raise PersistenceError(f"failed to list sessions: {e}") from e

        return [
            SessionSummary(session_id=SessionID(row[0]), turn_count=row[1], last_activity=row[2])
            for row in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        async with self._lock:
            if self._db is not None:
                await self._db.close()
                self._db = None


def create_session_store(config: Config | None = None) -> Store:
    """Create the store variant selected by configuration."""
    cfg = config or get_config()
    if cfg.session.storage == "memory":
        return InMemoryStore()
    return SQLiteStore(cfg.session.path)


__all__ = [
    "ConversationTurn",
    "InMemoryStore",
    "PREVIOUS_RESPONSE_ID_KEY",
    "ROLE_ASSISTANT",
    "ROLE_USER",
    "SQLiteStore",
    "SessionID",
    "SessionSummary",
    "Store",
    "ToolCallRecord",
    "create_session_store",
    "ensure_session_id",
    "new_session_id",
]
