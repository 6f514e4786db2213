"""
Memory record storage.

The memory service talks to an injected store instead of a global database
client. Two implementations are provided:

- InMemoryMemoryStore: dict-backed, for tests and single-process use.
- PostgresMemoryStore: one row per conversation in ``conversation_memories``,
  with a full-text index for relevance search.

Stores raise freely; the service turns failures into ``InternalError``.
"""

import logging
import re
from dataclasses import replace
from typing import Optional, Protocol

from ..errors import DuplicateMemory
from ..models import ConversationMemory

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")


def _copy(memory: ConversationMemory) -> ConversationMemory:
    return replace(memory, key_points=list(memory.key_points), entities=list(memory.entities))


def _search_text(memory: ConversationMemory) -> str:
    return " ".join([memory.summary, *memory.key_points, *memory.entities])


class MemoryStore(Protocol):
    """Storage capability used by the memory service, keyed by conversation id."""

    def get(self, conversation_id: str) -> Optional[ConversationMemory]: ...

    def put(self, memory: ConversationMemory) -> None:
        """Insert a new record; raise DuplicateMemory if the key exists."""

    def upsert(self, memory: ConversationMemory) -> ConversationMemory:
        """Insert or overwrite content fields; keep the stored created_at."""

    def delete(self, conversation_id: str) -> None: ...

    def text_search(
        self, query: str, user_id: Optional[str] = None, limit: int = 10
    ) -> list[ConversationMemory]: ...

    def pattern_search(
        self, query: str, user_id: Optional[str] = None, limit: int = 5
    ) -> list[ConversationMemory]: ...


class InMemoryMemoryStore:
    """Simple in-process memory store. Not persisted."""

    def __init__(self):
        self._records: dict[str, ConversationMemory] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, conversation_id: str) -> Optional[ConversationMemory]:
        memory = self._records.get(conversation_id)
        return _copy(memory) if memory else None

    def put(self, memory: ConversationMemory) -> None:
        if memory.conversation_id in self._records:
            raise DuplicateMemory(memory.conversation_id)
        self._records[memory.conversation_id] = _copy(memory)

    def upsert(self, memory: ConversationMemory) -> ConversationMemory:
        stored = _copy(memory)
        existing = self._records.get(memory.conversation_id)
        if existing is not None:
            stored.created_at = existing.created_at
            if stored.user_id is None:
                stored.user_id = existing.user_id
        self._records[memory.conversation_id] = stored
        return _copy(stored)

    def delete(self, conversation_id: str) -> None:
        self._records.pop(conversation_id, None)

    def _scoped(self, user_id: Optional[str]) -> list[ConversationMemory]:
        return [
            m for m in self._records.values()
            if user_id is None or m.user_id == user_id
        ]

    def text_search(
        self, query: str, user_id: Optional[str] = None, limit: int = 10
    ) -> list[ConversationMemory]:
        """Rank records by the number of query-term hits, most relevant first."""
        terms = [t.lower() for t in _WORD_RE.findall(query)]
        if not terms:
            return []
        scored = []
        for memory in self._scoped(user_id):
            words = [w.lower() for w in _WORD_RE.findall(_search_text(memory))]
            score = sum(words.count(term) for term in terms)
            if score:
                scored.append((score, memory))
        # Stable sorts: newest first, then by score
        scored.sort(
            key=lambda item: item[1].updated_at.timestamp() if item[1].updated_at else 0.0,
            reverse=True,
        )
        scored.sort(key=lambda item: item[0], reverse=True)
        return [_copy(memory) for _score, memory in scored[:limit]]

    def pattern_search(
        self, query: str, user_id: Optional[str] = None, limit: int = 5
    ) -> list[ConversationMemory]:
        """Case-insensitive substring match over summary, key points and entities."""
        needle = query.lower()
        results = []
        for memory in self._scoped(user_id):
            fields = [memory.summary, *memory.key_points, *memory.entities]
            if any(needle in f.lower() for f in fields):
                results.append(_copy(memory))
                if len(results) >= limit:
                    break
        return results


_COLUMNS = "conversation_id, user_id, summary, key_points, entities, created_at, updated_at"


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresMemoryStore:
    """
    Stores memory records in PostgreSQL.

    Expects a psycopg connection in autocommit mode; rows may be dicts
    (``dict_row``) or tuples.
    """

    def __init__(self, pg_conn):
        self._pg_conn = pg_conn
        self._setup_table()

    @classmethod
    def connect(cls, database_url: str) -> "PostgresMemoryStore":
        from psycopg import Connection
        from psycopg.rows import dict_row

        conn = Connection.connect(
            database_url,
            autocommit=True,
            prepare_threshold=0,
            row_factory=dict_row,
        )
        return cls(conn)

    def _setup_table(self):
        """Create conversation_memories table and its text index."""
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS conversation_memories (
                        conversation_id TEXT PRIMARY KEY,
                        user_id TEXT,
                        summary TEXT NOT NULL,
                        key_points TEXT[] NOT NULL DEFAULT '{}',
                        entities TEXT[] NOT NULL DEFAULT '{}',
                        search_text TEXT NOT NULL DEFAULT '',
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_conversation_memories_user
                    ON conversation_memories (user_id)
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_conversation_memories_text
                    ON conversation_memories
                    USING GIN (to_tsvector('english', search_text))
                """)
        except Exception as e:
            logger.warning("Failed to create conversation_memories table: %s", e)

    def get(self, conversation_id: str) -> Optional[ConversationMemory]:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM conversation_memories WHERE conversation_id = %s",
                (conversation_id,),
            )
            row = cur.fetchone()
        return ConversationMemory.from_row(row) if row else None

    def put(self, memory: ConversationMemory) -> None:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO conversation_memories
                    (conversation_id, user_id, summary, key_points, entities,
                     search_text, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (conversation_id) DO NOTHING
                """,
                (
                    memory.conversation_id,
                    memory.user_id,
                    memory.summary,
                    memory.key_points,
                    memory.entities,
                    _search_text(memory),
                    memory.created_at,
                    memory.updated_at,
                ),
            )
            if cur.rowcount == 0:
                raise DuplicateMemory(memory.conversation_id)

    def upsert(self, memory: ConversationMemory) -> ConversationMemory:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO conversation_memories
                    (conversation_id, user_id, summary, key_points, entities,
                     search_text, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (conversation_id) DO UPDATE SET
                    user_id = COALESCE(EXCLUDED.user_id, conversation_memories.user_id),
                    summary = EXCLUDED.summary,
                    key_points = EXCLUDED.key_points,
                    entities = EXCLUDED.entities,
                    search_text = EXCLUDED.search_text,
                    updated_at = EXCLUDED.updated_at
                RETURNING {_COLUMNS}
                """,
                (
                    memory.conversation_id,
                    memory.user_id,
                    memory.summary,
                    memory.key_points,
                    memory.entities,
                    _search_text(memory),
                    memory.created_at,
                    memory.updated_at,
                ),
            )
            row = cur.fetchone()
        return ConversationMemory.from_row(row) if row else memory

    def delete(self, conversation_id: str) -> None:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "DELETE FROM conversation_memories WHERE conversation_id = %s",
                (conversation_id,),
            )

    def text_search(
        self, query: str, user_id: Optional[str] = None, limit: int = 10
    ) -> list[ConversationMemory]:
        """Full-text search ranked by ts_rank; any query term may match."""
        where = "to_tsvector('english', search_text) @@ q"
        params: list = [query]
        if user_id:
            where += " AND user_id = %s"
            params.append(user_id)
        params.append(limit)
        sql = f"""
            SELECT {_COLUMNS}
            FROM conversation_memories,
                 replace(plainto_tsquery('english', %s)::text, '&', '|')::tsquery AS q
            WHERE {where}
            ORDER BY ts_rank(to_tsvector('english', search_text), q) DESC
            LIMIT %s
        """
        with self._pg_conn.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [ConversationMemory.from_row(r) for r in rows]

    def pattern_search(
        self, query: str, user_id: Optional[str] = None, limit: int = 5
    ) -> list[ConversationMemory]:
        """Keyword lookup using ILIKE over summary, key points and entities."""
        pattern = f"%{_escape_like(query)}%"
        where = """(
            summary ILIKE %s
            OR EXISTS (SELECT 1 FROM unnest(key_points) AS k WHERE k ILIKE %s)
            OR EXISTS (SELECT 1 FROM unnest(entities) AS e WHERE e ILIKE %s)
        )"""
        params: list = [pattern, pattern, pattern]
        if user_id:
            where += " AND user_id = %s"
            params.append(user_id)
        params.append(limit)
        sql = f"""
            SELECT {_COLUMNS} FROM conversation_memories
            WHERE {where}
            ORDER BY updated_at DESC
            LIMIT %s
        """
        with self._pg_conn.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [ConversationMemory.from_row(r) for r in rows]
