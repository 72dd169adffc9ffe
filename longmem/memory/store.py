"""Durable memory storage with a DuckDB backend."""

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple, Union

import duckdb
from pydantic import ValidationError as PydanticValidationError

from longmem.exceptions import NotFoundError, ValidationError
from longmem.memory.schema import Entity, Memory, MemoryInput, MemoryUpdate

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"

_MEMORY_COLUMNS = (
    "id, session_id, content, memory_type, category, importance, surprise_score, "
    "access_count, decay_factor, source_turn_id, created_at, updated_at, "
    "last_accessed_at, metadata"
)
_ENTITY_COLUMNS = "entity_type, entity_name, first_seen_at, last_seen_at, occurrence_count, properties"

# Fields that can never be cleared by an update
_REQUIRED_FIELDS = {"content", "memory_type", "importance", "surprise_score", "decay_factor", "metadata"}


class MemoryIndexer(Protocol):
    """Derived index kept consistent with the store inside each write transaction."""

    def index_memory(self, conn: duckdb.DuckDBPyConnection, memory: Memory) -> None: ...

    def remove_memories(self, conn: duckdb.DuckDBPyConnection, memory_ids: Sequence[int]) -> None: ...


def _loads(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        return json.loads(value)
    except (TypeError, ValueError) as e:
        logger.warning("Failed to parse JSON from memory store: %s", e)
        return {}


def _dumps(value: Optional[Dict[str, Any]]) -> str:
    return json.dumps(value or {}, default=str)


def _row_to_memory(row: tuple) -> Memory:
    return Memory(
        id=row[0],
        session_id=row[1],
        content=row[2],
        memory_type=row[3],
        category=row[4],
        importance=row[5],
        surprise_score=row[6],
        access_count=row[7],
        decay_factor=row[8],
        source_turn_id=row[9],
        created_at=row[10],
        updated_at=row[11],
        last_accessed_at=row[12],
        metadata=_loads(row[13]),
    )


def _row_to_entity(row: tuple) -> Entity:
    return Entity(
        entity_type=row[0],
        entity_name=row[1],
        first_seen_at=row[2],
        last_seen_at=row[3],
        occurrence_count=row[4],
        properties=_loads(row[5]),
    )


def _limit(limit: Optional[int]) -> int:
    return max(0, int(limit)) if limit is not None else 0


def session_clause(session_id: Optional[str], include_global: bool = False) -> Tuple[str, List[Any]]:
    """SQL predicate for a session filter.

    session_id=None means "no filter"; include_global adds global (NULL-session) rows.
    """
    if session_id is None:
        return "", []
    if include_global:
        return "(session_id = ? OR session_id IS NULL)", [session_id]
    return "session_id = ?", [session_id]


def _where(clauses: List[str]) -> str:
    clauses = [c for c in clauses if c]
    return "WHERE " + " AND ".join(clauses) if clauses else ""


class MemoryStore:
    """Persistent memory and entity records in DuckDB.

    Every write runs in its own transaction together with any registered indexers,
    so a record and its derived index entries commit or roll back as one unit.
    """

    def __init__(
        self,
        db_path: Union[Path, str] = IN_MEMORY,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize memory store.

        Args:
            db_path: Path to DuckDB database file, or ":memory:"
            clock: Source of "now" (naive datetimes); injectable for tests
        """
        self.db_path = db_path
        self.clock = clock
        self._lock = threading.RLock()
        self._indexers: List[MemoryIndexer] = []

        if str(db_path) != IN_MEMORY:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = duckdb.connect(str(db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables and sequences if they don't exist."""
        self.conn.execute("CREATE SEQUENCE IF NOT EXISTS memories_id_seq START 1")
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id BIGINT PRIMARY KEY,
                session_id VARCHAR,
                content VARCHAR NOT NULL,
                memory_type VARCHAR NOT NULL,
                category VARCHAR,
                importance DOUBLE NOT NULL DEFAULT 0.5,
                surprise_score DOUBLE NOT NULL DEFAULT 0.0,
                access_count INTEGER NOT NULL DEFAULT 0,
                decay_factor DOUBLE NOT NULL DEFAULT 1.0,
                source_turn_id VARCHAR,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                last_accessed_at TIMESTAMP,
                metadata VARCHAR NOT NULL DEFAULT '{}'
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS memory_entities (
                entity_type VARCHAR NOT NULL,
                entity_name VARCHAR NOT NULL,
                first_seen_at TIMESTAMP NOT NULL,
                last_seen_at TIMESTAMP NOT NULL,
                occurrence_count INTEGER NOT NULL DEFAULT 1,
                properties VARCHAR NOT NULL DEFAULT '{}',
                PRIMARY KEY (entity_type, entity_name)
            )
        """)

    def _now(self) -> datetime:
        return self.clock()

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block of statements atomically."""
        with self._lock:
            self.conn.begin()
            try:
                yield self.conn
            except Exception:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()

    @contextmanager
    def connection(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Borrow the connection for reads."""
        with self._lock:
            yield self.conn

    def add_indexer(self, indexer: MemoryIndexer) -> None:
        """Register a derived index to be updated on every write."""
        self._indexers.append(indexer)

    def _reindex(self, conn: duckdb.DuckDBPyConnection, memory: Memory) -> None:
        for indexer in self._indexers:
            indexer.index_memory(conn, memory)

    def _unindex(self, conn: duckdb.DuckDBPyConnection, memory_ids: Sequence[int]) -> None:
        if not memory_ids:
            return
        for indexer in self._indexers:
            indexer.remove_memories(conn, memory_ids)

    # ── Memories ─────────────────────────────────────────────────────

    def create_memory(
        self,
        content: Optional[str],
        memory_type: Optional[str],
        session_id: Optional[str] = None,
        category: Optional[str] = None,
        importance: float = 0.5,
        surprise_score: float = 0.0,
        access_count: int = 0,
        decay_factor: float = 1.0,
        source_turn_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Memory:
        """Store a new memory.

        Args:
            content: The statement to remember (required, non-empty)
            memory_type: preference, fact, decision, entity or relationship (required)
            session_id: Owning session (None = global)
            category: Free-form category
            importance: Importance in [0, 1] (clamped)
            surprise_score: Surprise in [0, 1] (clamped)
            access_count: Initial access count (clamped to >= 0)
            decay_factor: Persisted decay multiplier
            source_turn_id: Conversation turn the memory came from
            metadata: Opaque key/value data

        Returns:
            The full stored record including its assigned id

        Raises:
            ValidationError: If content or type is missing or invalid
        """
        if not content or not str(content).strip():
            raise ValidationError("Memory content and type are required", field="content")
        if not memory_type:
            raise ValidationError("Memory content and type are required", field="memory_type")

        try:
            data = MemoryInput(
                content=content,
                memory_type=memory_type,
                session_id=session_id,
                category=category,
                importance=importance,
                surprise_score=surprise_score,
                access_count=access_count,
                decay_factor=decay_factor,
                source_turn_id=source_turn_id,
                metadata=metadata,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid memory: {e}") from e

        now = self._now()
        with self.transaction() as conn:
            memory_id = conn.execute("SELECT NEXTVAL('memories_id_seq')").fetchone()[0]
            memory = Memory(
                id=memory_id,
                session_id=data.session_id,
                content=data.content,
                memory_type=data.memory_type.value,
                category=data.category,
                importance=data.importance,
                surprise_score=data.surprise_score,
                access_count=data.access_count,
                decay_factor=data.decay_factor,
                source_turn_id=data.source_turn_id,
                created_at=now,
                updated_at=now,
                last_accessed_at=None,
                metadata=data.metadata,
            )
            conn.execute(
                f"INSERT INTO memories ({_MEMORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    memory.id,
                    memory.session_id,
                    memory.content,
                    memory.memory_type,
                    memory.category,
                    memory.importance,
                    memory.surprise_score,
                    memory.access_count,
                    memory.decay_factor,
                    memory.source_turn_id,
                    memory.created_at,
                    memory.updated_at,
                    memory.last_accessed_at,
                    _dumps(memory.metadata),
                ],
            )
            self._reindex(conn, memory)

        logger.debug("Stored memory %s: %s", memory.id, memory.content[:50])
        return memory

    def get_memory(self, memory_id: int) -> Optional[Memory]:
        """Get a memory by ID, or None if it doesn't exist."""
        with self._lock:
            row = self.conn.execute(f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?", [memory_id]).fetchone()
        return _row_to_memory(row) if row else None

    def get_memories_by_ids(self, memory_ids: Sequence[int]) -> List[Memory]:
        """Bulk fetch, returned in the order of memory_ids (missing ids skipped)."""
        if not memory_ids:
            return []
        placeholders = ", ".join("?" for _ in memory_ids)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id IN ({placeholders})", list(memory_ids)
            ).fetchall()
        by_id = {row[0]: _row_to_memory(row) for row in rows}
        return [by_id[i] for i in memory_ids if i in by_id]

    def iter_memories(self, batch_size: int = 500) -> Iterator[Memory]:
        """Iterate over every memory in id order, one batch at a time."""
        last_id = 0
        while True:
            with self._lock:
                rows = self.conn.execute(
                    f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id > ? ORDER BY id LIMIT ?",
                    [last_id, batch_size],
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield _row_to_memory(row)
            last_id = rows[-1][0]

    def update_memory(self, memory_id: int, **changes: Any) -> Memory:
        """Apply a partial update to a memory.

        Unspecified fields keep their prior values; updated_at is bumped.

        Raises:
            NotFoundError: If the memory doesn't exist
            ValidationError: If a field is unknown or invalid
        """
        try:
            update = MemoryUpdate(**changes)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid memory update: {e}") from e

        fields = {
            key: value
            for key, value in update.model_dump(exclude_unset=True, mode="json").items()
            if not (value is None and key in _REQUIRED_FIELDS)
        }

        with self.transaction() as conn:
            row = conn.execute(f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?", [memory_id]).fetchone()
            if row is None:
                raise NotFoundError(memory_id)
            existing = _row_to_memory(row)
            updated = replace(existing, **fields)
            updated.updated_at = max(self._now(), existing.created_at)

            conn.execute(
                """
                UPDATE memories
                SET content = ?, memory_type = ?, category = ?, importance = ?, surprise_score = ?,
                    decay_factor = ?, source_turn_id = ?, metadata = ?, updated_at = ?
                WHERE id = ?
                """,
                [
                    updated.content,
                    updated.memory_type,
                    updated.category,
                    updated.importance,
                    updated.surprise_score,
                    updated.decay_factor,
                    updated.source_turn_id,
                    _dumps(updated.metadata),
                    updated.updated_at,
                    memory_id,
                ],
            )
            if "content" in fields:
                self._reindex(conn, updated)

        logger.debug("Updated memory %s (%s)", memory_id, ", ".join(sorted(fields)) or "touch")
        return updated

    def delete_memory(self, memory_id: int) -> bool:
        """Delete a memory by ID.

        Returns:
            True if a record existed and was removed
        """
        with self.transaction() as conn:
            deleted = conn.execute("DELETE FROM memories WHERE id = ? RETURNING id", [memory_id]).fetchall()
            self._unindex(conn, [row[0] for row in deleted])

        if deleted:
            logger.debug("Deleted memory %s", memory_id)
            return True
        return False

    def increment_access_count(self, memory_id: int) -> bool:
        """Bump access_count and set last_accessed_at. Returns False for unknown ids."""
        with self.transaction() as conn:
            row = conn.execute(
                """
                UPDATE memories
                SET access_count = access_count + 1, last_accessed_at = ?
                WHERE id = ?
                RETURNING id
                """,
                [self._now(), memory_id],
            ).fetchone()
        return row is not None

    def update_importance(self, memory_id: int, importance: float) -> bool:
        """Set importance (clamped to [0, 1]) and bump updated_at. Returns False for unknown ids."""
        value = max(0.0, min(1.0, float(importance)))
        with self.transaction() as conn:
            row = conn.execute(
                "UPDATE memories SET importance = ?, updated_at = ? WHERE id = ? RETURNING id",
                [value, self._now(), memory_id],
            ).fetchone()
        return row is not None

    def _select(self, where_sql: str, params: List[Any], order_sql: str, limit: Optional[int]) -> List[Memory]:
        limit = _limit(limit)
        if limit == 0:
            return []
        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories {where_sql} ORDER BY {order_sql} LIMIT ?"
        with self._lock:
            rows = self.conn.execute(sql, params + [limit]).fetchall()
        return [_row_to_memory(row) for row in rows]

    def get_recent_memories(
        self,
        limit: int = 10,
        session_id: Optional[str] = None,
        include_global: bool = False,
    ) -> List[Memory]:
        """List memories newest first.

        Args:
            limit: Maximum results
            session_id: Session filter (None = all sessions and global)
            include_global: With a session id, also include global memories
        """
        clause, params = session_clause(session_id, include_global)
        return self._select(_where([clause]), params, "created_at DESC, id DESC", limit)

    def get_memories_by_importance(
        self,
        limit: int = 10,
        session_id: Optional[str] = None,
        include_global: bool = False,
    ) -> List[Memory]:
        """List memories by importance, newest first among ties."""
        clause, params = session_clause(session_id, include_global)
        return self._select(_where([clause]), params, "importance DESC, created_at DESC, id DESC", limit)

    def get_memories_by_surprise(self, min_score: float = 0.3, limit: int = 10) -> List[Memory]:
        """List memories with surprise_score >= min_score, most surprising first."""
        return self._select(
            "WHERE surprise_score >= ?", [min_score], "surprise_score DESC, created_at DESC, id DESC", limit
        )

    def get_memories_by_type(self, memory_type: str, limit: int = 10) -> List[Memory]:
        """List memories of one type by importance, newest first among ties."""
        value = getattr(memory_type, "value", memory_type)
        return self._select(
            "WHERE memory_type = ?", [value], "importance DESC, created_at DESC, id DESC", limit
        )

    def prune_old_memories(self, max_age: Union[timedelta, int, float]) -> int:
        """Delete every memory created before now - max_age.

        Args:
            max_age: Age cutoff as a timedelta or in milliseconds

        Returns:
            Number of memories deleted
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(milliseconds=max_age)
        if max_age < timedelta(0):
            raise ValidationError("max_age must not be negative", field="max_age")

        cutoff = self._now() - max_age
        with self.transaction() as conn:
            deleted = conn.execute("DELETE FROM memories WHERE created_at < ? RETURNING id", [cutoff]).fetchall()
            self._unindex(conn, [row[0] for row in deleted])

        if deleted:
            logger.info("Pruned %d memories older than %s", len(deleted), cutoff.isoformat())
        return len(deleted)

    def prune_by_count(self, max_count: int) -> int:
        """Keep the top max_count memories by importance (newest first on ties).

        The retained set and the deletions come from one statement, so concurrent
        inserts can't change the outcome mid-operation.

        Returns:
            Number of memories deleted
        """
        if max_count is None or max_count < 0:
            raise ValidationError("max_count must be a non-negative integer", field="max_count")

        with self.transaction() as conn:
            deleted = conn.execute(
                """
                DELETE FROM memories
                WHERE id NOT IN (
                    SELECT id FROM memories
                    ORDER BY importance DESC, created_at DESC, id DESC
                    LIMIT ?
                )
                RETURNING id
                """,
                [int(max_count)],
            ).fetchall()
            self._unindex(conn, [row[0] for row in deleted])

        if deleted:
            logger.info("Pruned %d memories beyond the top %d", len(deleted), max_count)
        return len(deleted)

    def count_memories(
        self,
        session_id: Optional[str] = None,
        include_global: bool = False,
        since: Optional[datetime] = None,
        min_importance: Optional[float] = None,
    ) -> int:
        """Count memories, optionally filtered by session, creation time and importance."""
        clause, params = session_clause(session_id, include_global)
        clauses = [clause]
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        if min_importance is not None:
            clauses.append("importance >= ?")
            params.append(min_importance)

        with self._lock:
            result = self.conn.execute(f"SELECT COUNT(*) FROM memories {_where(clauses)}", params).fetchone()
        return result[0] if result else 0

    def count_by_column(self, column: str, session_id: Optional[str] = None) -> Dict[Optional[str], int]:
        """Group counts by memory_type or category."""
        if column not in ("memory_type", "category"):
            raise ValueError(f"Cannot group memories by {column!r}")
        clause, params = session_clause(session_id)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {column}, COUNT(*) FROM memories {_where([clause])} GROUP BY {column}", params
            ).fetchall()
        return {row[0]: row[1] for row in rows}

    def average_importance(self, session_id: Optional[str] = None) -> float:
        clause, params = session_clause(session_id)
        with self._lock:
            result = self.conn.execute(f"SELECT AVG(importance) FROM memories {_where([clause])}", params).fetchone()
        return float(result[0]) if result and result[0] is not None else 0.0

    # ── Entities ─────────────────────────────────────────────────────

    def track_entity(self, entity_type: str, entity_name: str, properties: Optional[Dict[str, Any]] = None) -> Entity:
        """Create an entity, or bump its occurrence count and overwrite its properties."""
        if not entity_type or not entity_name:
            raise ValidationError("Entity type and name are required", field="entity_name")

        now = self._now()
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT occurrence_count FROM memory_entities WHERE entity_type = ? AND entity_name = ?",
                [entity_type, entity_name],
            ).fetchone()
            if existing is None:
                conn.execute(
                    f"INSERT INTO memory_entities ({_ENTITY_COLUMNS}) VALUES (?, ?, ?, ?, 1, ?)",
                    [entity_type, entity_name, now, now, _dumps(properties)],
                )
            else:
                conn.execute(
                    """
                    UPDATE memory_entities
                    SET last_seen_at = ?, occurrence_count = occurrence_count + 1, properties = ?
                    WHERE entity_type = ? AND entity_name = ?
                    """,
                    [now, _dumps(properties), entity_type, entity_name],
                )
            row = conn.execute(
                f"SELECT {_ENTITY_COLUMNS} FROM memory_entities WHERE entity_type = ? AND entity_name = ?",
                [entity_type, entity_name],
            ).fetchone()
        return _row_to_entity(row)

    def get_entity(self, entity_type: str, entity_name: str) -> Optional[Entity]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {_ENTITY_COLUMNS} FROM memory_entities WHERE entity_type = ? AND entity_name = ?",
                [entity_type, entity_name],
            ).fetchone()
        return _row_to_entity(row) if row else None

    def get_all_entities(self, limit: int = 100) -> List[Entity]:
        """List entities, most frequently seen first."""
        limit = _limit(limit)
        if limit == 0:
            return []
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT {_ENTITY_COLUMNS} FROM memory_entities
                ORDER BY occurrence_count DESC, last_seen_at DESC
                LIMIT ?
                """,
                [limit],
            ).fetchall()
        return [_row_to_entity(row) for row in rows]

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
