"""SQLite storage backend.

Persists chat windows, raw chat messages, memories, emotion state and
relationship scores using SQLite with aiosqlite for async operations.
Implements the ChatHistoryRepo, MemoryRepo, EmotionStateRepo and
RelationshipRepo interfaces.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

import aiosqlite
import numpy as np
from loguru import logger

from ..embedding import EmbeddingService, cosine_similarity
from ..exceptions import EmotionConflictError, StorageError, WindowConflictError
from ..models import (
    ChatMessage,
    ChatWindow,
    EmotionState,
    Memory,
    MemoryType,
    Mood,
    RetrievedMemory,
    Role,
    Scope,
    SentimentLabel,
    TimeRange,
)

_SCOPE_WHERE = "user_id = ? AND app_name = ? AND persona_id = ?"


def _scope_params(scope: Scope) -> tuple[str, str, str]:
    return (scope.user_id, scope.app_name, scope.persona_id)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class SQLiteStore:
    """SQLite storage backend.

    Uses WAL mode for concurrent reads. Every write runs in its own
    ``BEGIN IMMEDIATE`` transaction under a store-wide lock, so writers
    sharing the connection never commit or roll back each other's
    statements. Memory creation and marking the source window summarized
    happen in one transaction, and a memory's ``source_window_id`` is
    unique, so a window yields at most one memory.
    """

    def __init__(self, db_path: str = "./memory/companion.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist.

        Creates directory for database file if needed.
        Enables WAL mode for concurrent reads.
        """
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured database directory exists: {db_dir}")

        try:
            self._db = await aiosqlite.connect(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open database: {e}", path=self.db_path) from e
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        await self._create_indexes()

        await self._db.commit()
        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        """Create all tables."""

        # Rolling chat windows
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS chat_windows (
                window_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                app_name TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                turn_count INTEGER NOT NULL DEFAULT 0,
                summarized INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        # Raw messages (best-effort log for recent history)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                app_name TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        # Summarized memories
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                memory_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                app_name TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                summary TEXT NOT NULL,
                facts TEXT,
                commitments TEXT,
                emotions TEXT,
                time_range TEXT,
                salience_score REAL NOT NULL DEFAULT 0.0,
                embedding BLOB,
                source_window_id INTEGER UNIQUE,
                created_at TEXT NOT NULL,
                FOREIGN KEY (source_window_id) REFERENCES chat_windows(window_id)
            )
        """)

        # Emotion state, one row per scope
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS emotion_states (
                user_id TEXT NOT NULL,
                app_name TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                affection INTEGER NOT NULL,
                mood TEXT NOT NULL,
                last_label TEXT,
                streak INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, app_name, persona_id)
            )
        """)

        # Keyword relationship score, one row per scope
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS relationship_scores (
                user_id TEXT NOT NULL,
                app_name TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                score INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, app_name, persona_id)
            )
        """)

        logger.debug("All tables created successfully")

    async def _create_indexes(self) -> None:
        """Create indexes for performance optimization."""

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_window_scope
            ON chat_windows(user_id, app_name, persona_id, summarized)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_message_scope
            ON chat_messages(user_id, app_name, persona_id, message_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_memory_scope
            ON memories(user_id, app_name, persona_id, memory_type)
        """)

        logger.debug("All indexes created successfully")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a write in one transaction, committed on success.

        Any exception (cancellation included) rolls the whole block back.
        """
        db = self._require_db()
        async with self._write_lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    # ------------------------------------------------------------------
    # Chat windows
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_window(row: aiosqlite.Row) -> ChatWindow:
        return ChatWindow(
            id=row["window_id"],
            scope=Scope(
                user_id=row["user_id"],
                app_name=row["app_name"],
                persona_id=row["persona_id"],
            ),
            content=row["content"],
            turn_count=row["turn_count"],
            summarized=bool(row["summarized"]),
            created_at=_parse_ts(row["created_at"]),
        )

    async def get_latest_window(self, scope: Scope) -> ChatWindow | None:
        """Get the newest non-summarized window for a scope."""
        db = self._require_db()
        async with db.execute(
            f"""
            SELECT * FROM chat_windows
            WHERE {_SCOPE_WHERE} AND summarized = 0
            ORDER BY window_id DESC
            LIMIT 1
            """,
            _scope_params(scope),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_window(row) if row else None

    async def get_window(self, window_id: int) -> ChatWindow | None:
        db = self._require_db()
        async with db.execute(
            "SELECT * FROM chat_windows WHERE window_id = ?", (window_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_window(row) if row else None

    async def create_window(self, window: ChatWindow) -> ChatWindow:
        """Insert a new window and return it with its id."""
        async with self._transaction() as db:
            cursor = await db.execute(
                """
                INSERT INTO chat_windows (
                    user_id, app_name, persona_id, content,
                    turn_count, summarized, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    *_scope_params(window.scope),
                    window.content,
                    window.turn_count,
                    int(window.summarized),
                    window.created_at.isoformat(),
                ),
            )
        created = window.model_copy(update={"id": cursor.lastrowid})
        logger.debug(f"Chat window created: {created.id} ({window.scope.key})")
        return created

    async def append_to_window(
        self,
        window_id: int,
        new_content: str,
        new_turn_count: int,
        expected_turn_count: int,
    ) -> None:
        """Replace window content if nobody else touched it meanwhile.

        Raises:
            WindowConflictError: turn count moved or window got summarized
        """
        async with self._transaction() as db:
            cursor = await db.execute(
                """
                UPDATE chat_windows
                SET content = ?, turn_count = ?
                WHERE window_id = ? AND turn_count = ? AND summarized = 0
                """,
                (new_content, new_turn_count, window_id, expected_turn_count),
            )
        if cursor.rowcount != 1:
            raise WindowConflictError(window_id)

    async def mark_summarized(self, window_id: int) -> None:
        async with self._transaction() as db:
            await db.execute(
                "UPDATE chat_windows SET summarized = 1 WHERE window_id = ?",
                (window_id,),
            )
        logger.debug(f"Chat window marked summarized: {window_id}")

    async def get_pending_windows(
        self, scope: Scope, trunk_size: int
    ) -> list[ChatWindow]:
        """Full, non-summarized windows for a scope, oldest first."""
        db = self._require_db()
        async with db.execute(
            f"""
            SELECT * FROM chat_windows
            WHERE {_SCOPE_WHERE} AND summarized = 0 AND turn_count >= ?
            ORDER BY window_id ASC
            """,
            (*_scope_params(scope), trunk_size),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_window(row) for row in rows]

    async def list_windows(self, scope: Scope, limit: int = 20) -> list[ChatWindow]:
        """Most recent windows for a scope, newest first."""
        db = self._require_db()
        async with db.execute(
            f"""
            SELECT * FROM chat_windows
            WHERE {_SCOPE_WHERE}
            ORDER BY window_id DESC
            LIMIT ?
            """,
            (*_scope_params(scope), limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_window(row) for row in rows]

    # ------------------------------------------------------------------
    # Raw messages
    # ------------------------------------------------------------------

    async def add_message(self, message: ChatMessage) -> int:
        async with self._transaction() as db:
            cursor = await db.execute(
                """
                INSERT INTO chat_messages (
                    user_id, app_name, persona_id, role, content, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    *_scope_params(message.scope),
                    message.role.value,
                    message.content,
                    message.created_at.isoformat(),
                ),
            )
        return cursor.lastrowid

    async def get_recent(self, scope: Scope, limit: int) -> list[ChatMessage]:
        """Most recent raw messages, returned oldest to newest."""
        db = self._require_db()
        async with db.execute(
            f"""
            SELECT * FROM chat_messages
            WHERE {_SCOPE_WHERE}
            ORDER BY message_id DESC
            LIMIT ?
            """,
            (*_scope_params(scope), limit),
        ) as cursor:
            rows = await cursor.fetchall()

        messages = [
            ChatMessage(
                id=row["message_id"],
                scope=scope,
                role=Role(row["role"]),
                content=row["content"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]
        messages.reverse()
        return messages

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def _memory_params(self, memory: Memory, window_id: int | None) -> tuple:
        blob = (
            EmbeddingService.serialize_embedding(memory.embedding)
            if memory.embedding
            else None
        )
        return (
            *_scope_params(memory.scope),
            memory.memory_type.value,
            memory.summary,
            json.dumps(memory.facts, ensure_ascii=False),
            json.dumps(memory.commitments, ensure_ascii=False),
            json.dumps(memory.emotions, ensure_ascii=False),
            memory.time_range.model_dump_json(),
            memory.salience,
            blob,
            window_id,
            memory.created_at.isoformat(),
        )

    _INSERT_MEMORY_SQL = """
        INSERT INTO memories (
            user_id, app_name, persona_id, memory_type, summary,
            facts, commitments, emotions, time_range,
            salience_score, embedding, source_window_id, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    async def add_memory(self, memory: Memory) -> int:
        """Insert a memory that is not tied to a chat window."""
        async with self._transaction() as db:
            cursor = await db.execute(
                self._INSERT_MEMORY_SQL,
                self._memory_params(memory, memory.source_window_id),
            )
        logger.debug(f"Memory inserted: {cursor.lastrowid}")
        return cursor.lastrowid

    async def commit_memory(self, memory: Memory, window_id: int) -> int:
        """Insert a memory and mark its source window summarized atomically.

        Re-committing the same window is idempotent: the existing memory
        id is returned and the window is marked summarized.

        Returns:
            Memory ID
        """
        async with self._transaction() as db:
            try:
                cursor = await db.execute(
                    self._INSERT_MEMORY_SQL, self._memory_params(memory, window_id)
                )
                memory_id = cursor.lastrowid
            except sqlite3.IntegrityError:
                async with db.execute(
                    "SELECT memory_id FROM memories WHERE source_window_id = ?",
                    (window_id,),
                ) as existing:
                    row = await existing.fetchone()
                if row is None:
                    raise
                memory_id = row["memory_id"]
                logger.warning(
                    f"Window {window_id} already has memory {memory_id}; "
                    f"marking summarized"
                )

            await db.execute(
                "UPDATE chat_windows SET summarized = 1 WHERE window_id = ?",
                (window_id,),
            )

        logger.debug(f"Memory {memory_id} committed for window {window_id}")
        return memory_id

    @staticmethod
    def _row_to_memory(row: aiosqlite.Row) -> Memory:
        blob = row["embedding"]
        return Memory(
            id=row["memory_id"],
            scope=Scope(
                user_id=row["user_id"],
                app_name=row["app_name"],
                persona_id=row["persona_id"],
            ),
            memory_type=MemoryType(row["memory_type"]),
            summary=row["summary"],
            facts=json.loads(row["facts"] or "[]"),
            commitments=json.loads(row["commitments"] or "[]"),
            emotions=json.loads(row["emotions"] or "[]"),
            time_range=(
                TimeRange.model_validate_json(row["time_range"])
                if row["time_range"]
                else TimeRange()
            ),
            salience=row["salience_score"],
            embedding=EmbeddingService.deserialize_embedding(blob) if blob else None,
            source_window_id=row["source_window_id"],
            created_at=_parse_ts(row["created_at"]),
        )

    async def get_memory_for_window(self, window_id: int) -> Memory | None:
        db = self._require_db()
        async with db.execute(
            "SELECT * FROM memories WHERE source_window_id = ?", (window_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_memory(row) if row else None

    async def list_memories(self, scope: Scope, limit: int = 20) -> list[Memory]:
        """Most recent memories for a scope, newest first."""
        db = self._require_db()
        async with db.execute(
            f"""
            SELECT * FROM memories
            WHERE {_SCOPE_WHERE}
            ORDER BY memory_id DESC
            LIMIT ?
            """,
            (*_scope_params(scope), limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_memory(row) for row in rows]

    async def search_similar(
        self,
        scope: Scope,
        embedding: list[float],
        threshold: float,
        memory_type: str | None = None,
        limit: int | None = None,
    ) -> list[RetrievedMemory]:
        """Memories of a scope whose cosine similarity exceeds ``threshold``.

        Returns:
            Candidates ordered by similarity descending
        """
        if not embedding:
            return []

        db = self._require_db()
        sql = f"""
            SELECT memory_id, memory_type, summary, salience_score,
                   embedding, created_at
            FROM memories
            WHERE {_SCOPE_WHERE} AND embedding IS NOT NULL
        """
        params: list = list(_scope_params(scope))
        if memory_type:
            sql += " AND memory_type = ?"
            params.append(memory_type)

        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        if not rows:
            return []

        query = np.asarray(embedding, dtype=np.float32)
        if not np.any(query):
            return []

        candidates: list[RetrievedMemory] = []
        for row in rows:
            vector = np.frombuffer(row["embedding"], dtype="<f4")
            if vector.shape != query.shape:
                logger.warning(
                    f"Skipping memory {row['memory_id']}: embedding dim "
                    f"{vector.shape[0]} != query dim {query.shape[0]}"
                )
                continue
            similarity = cosine_similarity(query, vector)
            if similarity <= threshold:
                continue
            candidates.append(RetrievedMemory(
                memory_id=row["memory_id"],
                role=Role.ASSISTANT,
                content=row["summary"],
                memory_type=MemoryType(row["memory_type"]),
                similarity=similarity,
                salience=row["salience_score"] or 0.0,
                created_at=_parse_ts(row["created_at"]),
            ))

        candidates.sort(key=lambda c: c.similarity, reverse=True)
        if limit is not None:
            candidates = candidates[:limit]
        return candidates

    # ------------------------------------------------------------------
    # Emotion state
    # ------------------------------------------------------------------

    async def get_emotion_state(self, scope: Scope) -> EmotionState | None:
        db = self._require_db()
        async with db.execute(
            f"SELECT * FROM emotion_states WHERE {_SCOPE_WHERE}",
            _scope_params(scope),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return EmotionState(
            affection=row["affection"],
            mood=Mood(row["mood"]),
            last_label=SentimentLabel(row["last_label"]) if row["last_label"] else None,
            streak=row["streak"],
            version=row["version"],
            updated_at=_parse_ts(row["updated_at"]),
        )

    async def save_emotion_state(
        self, scope: Scope, state: EmotionState, expected_version: int
    ) -> EmotionState:
        """Write the state if the stored version still equals ``expected_version``.

        Version 0 means "no row yet" and inserts.

        Raises:
            EmotionConflictError: another writer got there first
        """
        new_version = expected_version + 1
        last_label = state.last_label.value if state.last_label else None
        updated_at = _now_iso()

        if expected_version == 0:
            try:
                async with self._transaction() as db:
                    await db.execute(
                        """
                        INSERT INTO emotion_states (
                            user_id, app_name, persona_id, affection, mood,
                            last_label, streak, version, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            *_scope_params(scope),
                            state.affection,
                            state.mood.value,
                            last_label,
                            state.streak,
                            new_version,
                            updated_at,
                        ),
                    )
            except sqlite3.IntegrityError as e:
                raise EmotionConflictError(scope.key) from e
        else:
            async with self._transaction() as db:
                cursor = await db.execute(
                    f"""
                    UPDATE emotion_states
                    SET affection = ?, mood = ?, last_label = ?, streak = ?,
                        version = ?, updated_at = ?
                    WHERE {_SCOPE_WHERE} AND version = ?
                    """,
                    (
                        state.affection,
                        state.mood.value,
                        last_label,
                        state.streak,
                        new_version,
                        updated_at,
                        *_scope_params(scope),
                        expected_version,
                    ),
                )
            if cursor.rowcount != 1:
                raise EmotionConflictError(scope.key)

        return state.model_copy(
            update={"version": new_version, "updated_at": _parse_ts(updated_at)}
        )

    # ------------------------------------------------------------------
    # Relationship score
    # ------------------------------------------------------------------

    async def get_relationship_score(self, scope: Scope) -> int:
        """Running relationship score for a scope (0 if never updated)."""
        db = self._require_db()
        async with db.execute(
            f"SELECT score FROM relationship_scores WHERE {_SCOPE_WHERE}",
            _scope_params(scope),
        ) as cursor:
            row = await cursor.fetchone()
        return row["score"] if row else 0

    async def add_relationship_delta(self, scope: Scope, delta: int) -> int:
        """Add ``delta`` to the scope's score and return the new score."""
        async with self._transaction() as db:
            await db.execute(
                """
                INSERT INTO relationship_scores (
                    user_id, app_name, persona_id, score, updated_at
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id, app_name, persona_id) DO UPDATE SET
                    score = score + excluded.score,
                    updated_at = excluded.updated_at
                """,
                (*_scope_params(scope), delta, _now_iso()),
            )
            async with db.execute(
                f"SELECT score FROM relationship_scores WHERE {_SCOPE_WHERE}",
                _scope_params(scope),
            ) as cursor:
                row = await cursor.fetchone()
        return row["score"]
