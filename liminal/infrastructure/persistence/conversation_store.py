"""
SQLite persistence for sessions, turns, tier transitions and state snapshots.

A single aiosqlite connection is shared; multi-statement writes run under an
asyncio lock so their transactions never interleave. Every driver error is
re-raised as StorageFailure with the original as its cause.
"""

from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
import asyncio
import functools
import json
import uuid

import aiosqlite
import structlog

from liminal.domain.models.conversation import (
    ConversationTurn,
    MemorySession,
    MemoryTier,
    StateSnapshot,
    TierTransition,
)
from liminal.domain.models.errors import InvalidInput, StorageFailure
from liminal.domain.models.framework_state import IdentityAnchor, utc_now

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversation_sessions (
    id TEXT PRIMARY KEY NOT NULL,
    user_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    turn_count INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON conversation_sessions(user_id);

CREATE TABLE IF NOT EXISTS conversation_turns (
    id TEXT PRIMARY KEY NOT NULL,
    session_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    turn_number INTEGER NOT NULL,
    user_message TEXT NOT NULL,
    user_timestamp TEXT NOT NULL,
    agent_response TEXT,
    agent_timestamp TEXT,
    snapshot_id TEXT,
    memory_tier TEXT NOT NULL DEFAULT 'hot',
    tier_changed_at TEXT,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    UNIQUE (session_id, turn_number),
    FOREIGN KEY (session_id) REFERENCES conversation_sessions(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_turns_user_tier ON conversation_turns(user_id, memory_tier);
CREATE INDEX IF NOT EXISTS idx_turns_number ON conversation_turns(session_id, turn_number);

CREATE TABLE IF NOT EXISTS memory_tier_transitions (
    id TEXT PRIMARY KEY NOT NULL,
    turn_id TEXT NOT NULL,
    from_tier TEXT NOT NULL,
    to_tier TEXT NOT NULL,
    reason TEXT NOT NULL,
    transitioned_at TEXT NOT NULL,
    FOREIGN KEY (turn_id) REFERENCES conversation_turns(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_transitions_turn ON memory_tier_transitions(turn_id);

CREATE TABLE IF NOT EXISTS state_snapshots (
    id TEXT PRIMARY KEY NOT NULL,
    user_id TEXT NOT NULL,
    session_id TEXT,
    created_at TEXT NOT NULL,
    state TEXT NOT NULL,
    identity_anchors TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_snapshots_user ON state_snapshots(user_id, created_at);
"""

TURN_COLUMNS = (
    "id, session_id, user_id, turn_number, user_message, user_timestamp, agent_response, "
    "agent_timestamp, snapshot_id, memory_tier, tier_changed_at, input_tokens, output_tokens"
)

# Tier of turn t once answered turns beyond the hot window are read as warm
EFFECTIVE_TIER = (
    "CASE WHEN t.memory_tier = 'hot' AND t.agent_response IS NOT NULL AND ("
    "SELECT COUNT(*) FROM conversation_turns n "
    "WHERE n.session_id = t.session_id AND n.agent_response IS NOT NULL AND n.turn_number > t.turn_number"
    ") >= ? THEN 'warm' ELSE t.memory_tier END"
)


def new_id() -> str:
    return str(uuid.uuid4())


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC text so lexical order matches time order"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def storage_operation(stage: str) -> Callable:
    """Re-raise driver errors from the wrapped coroutine as StorageFailure"""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except aiosqlite.Error as exc:
                logger.error("Storage operation failed", stage=stage, error=str(exc))
                raise StorageFailure(stage, f"{type(exc).__name__}: {exc}") from exc
        return wrapper

    return decorator


class ConversationStore:
    """Async store for conversation memory"""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @storage_operation("connect")
    async def connect(self) -> "ConversationStore":
        if self._db is None:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA foreign_keys = ON")
            await self._db.executescript(SCHEMA)
            await self._db.commit()
            logger.info("Conversation store connected", db_path=self.db_path)
        return self

    @storage_operation("close")
    async def close(self):
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "ConversationStore":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageFailure("connect", "conversation store is not connected")
        return self._db

    async def _fetchall(self, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        async with self.db.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self.db.execute(sql, params) as cursor:
            return await cursor.fetchone()

    # Sessions

    @storage_operation("create_session")
    async def create_session(self, user_id: str) -> MemorySession:
        session = MemorySession(id=new_id(), user_id=user_id)
        async with self._write_lock:
            await self.db.execute(
                "INSERT INTO conversation_sessions (id, user_id, started_at) VALUES (?, ?, ?)",
                (session.id, user_id, format_timestamp(session.started_at))
            )
            await self.db.commit()
        return session

    @storage_operation("get_session")
    async def get_session(self, session_id: str) -> Optional[MemorySession]:
        row = await self._fetchone("SELECT * FROM conversation_sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    @storage_operation("get_open_session")
    async def get_open_session(self, user_id: str) -> Optional[MemorySession]:
        row = await self._fetchone(
            "SELECT * FROM conversation_sessions WHERE user_id = ? AND ended_at IS NULL "
            "ORDER BY started_at DESC LIMIT 1",
            (user_id,)
        )
        return self._row_to_session(row) if row else None

    @storage_operation("end_session")
    async def end_session(self, session_id: str, reason: str = "session_end") -> List[TierTransition]:
        """Close the session and move its hot and warm turns to cold in one transaction"""

        now = utc_now()
        stamp = format_timestamp(now)
        async with self._write_lock:
            try:
                cursor = await self.db.execute(
                    "UPDATE conversation_sessions SET ended_at = ? WHERE id = ? AND ended_at IS NULL",
                    (stamp, session_id)
                )
                if cursor.rowcount == 0:
                    await self.db.rollback()
                    if await self.get_session(session_id) is None:
                        raise InvalidInput("end_session", f"unknown session {session_id}")
                    return []

                rows = await self._fetchall(
                    "SELECT id, memory_tier FROM conversation_turns "
                    "WHERE session_id = ? AND memory_tier IN ('hot', 'warm') ORDER BY turn_number",
                    (session_id,)
                )
                transitions = [
                    TierTransition(
                        id=new_id(),
                        turn_id=row["id"],
                        from_tier=MemoryTier(row["memory_tier"]),
                        to_tier=MemoryTier.COLD,
                        reason=reason,
                        transitioned_at=now
                    )
                    for row in rows
                ]

                await self.db.execute(
                    "UPDATE conversation_turns SET memory_tier = 'cold', tier_changed_at = ? "
                    "WHERE session_id = ? AND memory_tier IN ('hot', 'warm')",
                    (stamp, session_id)
                )
                await self.db.executemany(
                    "INSERT INTO memory_tier_transitions "
                    "(id, turn_id, from_tier, to_tier, reason, transitioned_at) VALUES (?, ?, ?, ?, ?, ?)",
                    [
                        (t.id, t.turn_id, t.from_tier.value, t.to_tier.value, t.reason, stamp)
                        for t in transitions
                    ]
                )
                await self.db.commit()
            except aiosqlite.Error:
                await self.db.rollback()
                raise

        return transitions

    # Turns

    @storage_operation("insert_turn")
    async def insert_turn(
        self,
        session_id: str,
        user_id: str,
        user_message: str,
        input_tokens: int = 0
    ) -> ConversationTurn:
        """Insert a user message; the turn number is max + 1 within the session"""

        turn_id = new_id()
        async with self._write_lock:
            await self.db.execute(
                "INSERT INTO conversation_turns "
                "(id, session_id, user_id, turn_number, user_message, user_timestamp, input_tokens) "
                "SELECT ?, ?, ?, COALESCE(MAX(turn_number), 0) + 1, ?, ?, ? "
                "FROM conversation_turns WHERE session_id = ?",
                (turn_id, session_id, user_id, user_message, format_timestamp(utc_now()), input_tokens, session_id)
            )
            await self.db.execute(
                "UPDATE conversation_sessions SET turn_count = turn_count + 1, "
                "total_tokens = total_tokens + ? WHERE id = ?",
                (input_tokens, session_id)
            )
            await self.db.commit()

        return await self.get_turn(turn_id)

    @storage_operation("get_turn")
    async def get_turn(self, turn_id: str) -> Optional[ConversationTurn]:
        row = await self._fetchone(f"SELECT {TURN_COLUMNS} FROM conversation_turns WHERE id = ?", (turn_id,))
        return self._row_to_turn(row) if row else None

    @storage_operation("update_response")
    async def update_response(
        self,
        turn_id: str,
        response: str,
        output_tokens: int = 0,
        snapshot_id: Optional[str] = None
    ) -> ConversationTurn:
        """Write the agent response once; a second write is rejected"""

        async with self._write_lock:
            cursor = await self.db.execute(
                "UPDATE conversation_turns SET agent_response = ?, agent_timestamp = ?, "
                "output_tokens = ?, snapshot_id = COALESCE(?, snapshot_id) "
                "WHERE id = ? AND agent_response IS NULL",
                (response, format_timestamp(utc_now()), output_tokens, snapshot_id, turn_id)
            )
            if cursor.rowcount == 0:
                await self.db.rollback()
                existing = await self.get_turn(turn_id)
                if existing is None:
                    raise InvalidInput("record_response", f"unknown turn {turn_id}")
                raise InvalidInput("record_response", f"turn {turn_id} already has a response")

            await self.db.execute(
                "UPDATE conversation_sessions SET total_tokens = total_tokens + ? "
                "WHERE id = (SELECT session_id FROM conversation_turns WHERE id = ?)",
                (output_tokens, turn_id)
            )
            await self.db.commit()

        return await self.get_turn(turn_id)

    @storage_operation("recent_answered_turns")
    async def recent_answered_turns(self, session_id: str, limit: int, offset: int = 0) -> List[ConversationTurn]:
        """Answered turns of a session, newest first"""
        rows = await self._fetchall(
            f"SELECT {TURN_COLUMNS} FROM conversation_turns "
            "WHERE session_id = ? AND agent_response IS NOT NULL "
            "ORDER BY turn_number DESC LIMIT ? OFFSET ?",
            (session_id, limit, offset)
        )
        return [self._row_to_turn(row) for row in rows]

    @storage_operation("turns_in_tier")
    async def turns_in_tier(self, user_id: str, tier: MemoryTier, limit: int) -> List[ConversationTurn]:
        """A user's turns in one tier across all sessions, newest first"""
        rows = await self._fetchall(
            f"SELECT {TURN_COLUMNS} FROM conversation_turns "
            "WHERE user_id = ? AND memory_tier = ? "
            "ORDER BY user_timestamp DESC, turn_number DESC LIMIT ?",
            (user_id, tier.value, limit)
        )
        return [self._row_to_turn(row) for row in rows]

    @storage_operation("search_turns")
    async def search_turns(
        self,
        user_id: str,
        tier: MemoryTier,
        keyword: str,
        limit: int,
        hot_window: int
    ) -> List[ConversationTurn]:
        """Case-insensitive substring match over user and agent text

        Tier is resolved by position: a hot-labelled answered turn with at
        least hot_window newer answered turns in its session counts as warm.
        """
        pattern = f"%{escape_like(keyword.lower())}%"
        rows = await self._fetchall(
            f"SELECT {TURN_COLUMNS} FROM conversation_turns t "
            f"WHERE t.user_id = ? AND ({EFFECTIVE_TIER}) = ? "
            "AND (LOWER(user_message) LIKE ? ESCAPE '\\' OR LOWER(COALESCE(agent_response, '')) LIKE ? ESCAPE '\\') "
            "ORDER BY user_timestamp DESC, turn_number DESC LIMIT ?",
            (user_id, hot_window, tier.value, pattern, pattern, limit)
        )
        return [self._row_to_turn(row) for row in rows]

    # Tier transitions

    @storage_operation("update_tier")
    async def update_tier(self, turn_id: str, to_tier: MemoryTier, reason: str) -> TierTransition:
        now = utc_now()
        stamp = format_timestamp(now)
        async with self._write_lock:
            row = await self._fetchone("SELECT memory_tier FROM conversation_turns WHERE id = ?", (turn_id,))
            if row is None:
                raise InvalidInput("transition_tier", f"unknown turn {turn_id}")

            transition = TierTransition(
                id=new_id(),
                turn_id=turn_id,
                from_tier=MemoryTier(row["memory_tier"]),
                to_tier=to_tier,
                reason=reason,
                transitioned_at=now
            )
            try:
                await self.db.execute(
                    "UPDATE conversation_turns SET memory_tier = ?, tier_changed_at = ? WHERE id = ?",
                    (to_tier.value, stamp, turn_id)
                )
                await self.db.execute(
                    "INSERT INTO memory_tier_transitions "
                    "(id, turn_id, from_tier, to_tier, reason, transitioned_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (transition.id, turn_id, transition.from_tier.value, to_tier.value, reason, stamp)
                )
                await self.db.commit()
            except aiosqlite.Error:
                await self.db.rollback()
                raise

        return transition

    @storage_operation("get_tier_transitions")
    async def get_tier_transitions(self, turn_id: str) -> List[TierTransition]:
        rows = await self._fetchall(
            "SELECT * FROM memory_tier_transitions WHERE turn_id = ? ORDER BY transitioned_at, rowid",
            (turn_id,)
        )
        return [
            TierTransition(
                id=row["id"],
                turn_id=row["turn_id"],
                from_tier=MemoryTier(row["from_tier"]),
                to_tier=MemoryTier(row["to_tier"]),
                reason=row["reason"],
                transitioned_at=parse_timestamp(row["transitioned_at"])
            )
            for row in rows
        ]

    @storage_operation("count_transitions")
    async def count_transitions(self, session_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM memory_tier_transitions t "
            "JOIN conversation_turns c ON c.id = t.turn_id WHERE c.session_id = ?",
            (session_id,)
        )
        return row["n"]

    # Snapshots

    @storage_operation("save_snapshot")
    async def save_snapshot(self, snapshot: StateSnapshot) -> StateSnapshot:
        async with self._write_lock:
            await self.db.execute(
                "INSERT INTO state_snapshots (id, user_id, session_id, created_at, state, identity_anchors) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    snapshot.id,
                    snapshot.user_id,
                    snapshot.session_id,
                    format_timestamp(snapshot.created_at),
                    json.dumps(snapshot.state),
                    json.dumps([anchor.model_dump() for anchor in snapshot.identity_anchors])
                )
            )
            await self.db.commit()
        return snapshot

    @storage_operation("get_snapshot")
    async def get_snapshot(self, snapshot_id: str) -> Optional[StateSnapshot]:
        row = await self._fetchone("SELECT * FROM state_snapshots WHERE id = ?", (snapshot_id,))
        return self._row_to_snapshot(row) if row else None

    @storage_operation("latest_snapshot")
    async def latest_snapshot(self, user_id: str) -> Optional[StateSnapshot]:
        row = await self._fetchone(
            "SELECT * FROM state_snapshots WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (user_id,)
        )
        return self._row_to_snapshot(row) if row else None

    # Row mapping

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> MemorySession:
        return MemorySession(
            id=row["id"],
            user_id=row["user_id"],
            started_at=parse_timestamp(row["started_at"]),
            ended_at=parse_timestamp(row["ended_at"]),
            turn_count=row["turn_count"],
            total_tokens=row["total_tokens"]
        )

    @staticmethod
    def _row_to_turn(row: aiosqlite.Row) -> ConversationTurn:
        return ConversationTurn(
            id=row["id"],
            session_id=row["session_id"],
            user_id=row["user_id"],
            turn_number=row["turn_number"],
            user_message=row["user_message"],
            agent_response=row["agent_response"],
            user_timestamp=parse_timestamp(row["user_timestamp"]),
            agent_timestamp=parse_timestamp(row["agent_timestamp"]),
            snapshot_id=row["snapshot_id"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            memory_tier=MemoryTier(row["memory_tier"]),
            tier_changed_at=parse_timestamp(row["tier_changed_at"])
        )

    @staticmethod
    def _row_to_snapshot(row: aiosqlite.Row) -> StateSnapshot:
        anchors: List[Dict[str, Any]] = json.loads(row["identity_anchors"] or "[]")
        return StateSnapshot(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row["session_id"],
            created_at=parse_timestamp(row["created_at"]),
            state=json.loads(row["state"]),
            identity_anchors=[IdentityAnchor(**anchor) for anchor in anchors]
        )
