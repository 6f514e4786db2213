"""
Tests for memory storage, the memory service and the chat context middleware.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from chat_context.errors import DuplicateMemory, InternalError, ValidationError
from chat_context.models import ConversationMemory, FileAttachment, Message, Role
from chat_context.memory.budgeter import MEMORY_MESSAGE_ID
from chat_context.memory.config import ContextConfig
from chat_context.memory.middleware import ChatContextMiddleware
from chat_context.memory.service import MemoryService, format_context
from chat_context.memory.store import InMemoryMemoryStore, PostgresMemoryStore


CONVERSATION = [
    {"role": "user", "content": "How do I use React hooks?"},
    {"role": "assistant", "content": "Call useState inside a component in App.js"},
]


def _memory(conversation_id, summary="", key_points=None, entities=None, user_id=None, updated_at=None):
    return ConversationMemory(
        conversation_id=conversation_id,
        summary=summary,
        key_points=key_points or [],
        entities=entities or [],
        user_id=user_id,
        created_at=updated_at,
        updated_at=updated_at,
    )


def _failing_store(exc=RuntimeError("connection refused")):
    store = MagicMock()
    for name in ("get", "put", "upsert", "delete", "text_search", "pattern_search"):
        getattr(store, name).side_effect = exc
    return store


# ── In-Memory Store Tests ──


class TestInMemoryStore:
    def test_put_and_get(self):
        store = InMemoryMemoryStore()
        store.put(_memory("c1", "summary"))
        assert store.get("c1").summary == "summary"
        assert store.get("missing") is None

    def test_put_duplicate(self):
        store = InMemoryMemoryStore()
        store.put(_memory("c1"))
        with pytest.raises(DuplicateMemory):
            store.put(_memory("c1"))

    def test_upsert_keeps_created_at_and_user(self):
        store = InMemoryMemoryStore()
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        t1 = datetime(2024, 1, 2, tzinfo=timezone.utc)
        store.upsert(_memory("c1", "old", user_id="u1", updated_at=t0))
        stored = store.upsert(_memory("c1", "new", updated_at=t1))
        assert stored.summary == "new"
        assert stored.created_at == t0
        assert stored.updated_at == t1
        assert stored.user_id == "u1"
        assert len(store) == 1

    def test_returned_records_are_copies(self):
        store = InMemoryMemoryStore()
        original = _memory("c1", "react hooks", key_points=["Why?"])
        store.put(original)
        original.key_points.append("leaked")
        store.get("c1").key_points.append("leaked")
        assert store.get("c1").key_points == ["Why?"]

        store.upsert(_memory("c1", "react hooks", entities=["React"])).entities.append("leaked")
        found = store.text_search("react")[0]
        found.summary = "changed"
        store.pattern_search("react")[0].entities.clear()
        stored = store.get("c1")
        assert stored.summary == "react hooks"
        assert stored.entities == ["React"]

    def test_delete_is_idempotent(self):
        store = InMemoryMemoryStore()
        store.put(_memory("c1"))
        store.delete("c1")
        store.delete("c1")
        assert store.get("c1") is None

    def test_text_search_ranks_by_hits(self):
        store = InMemoryMemoryStore()
        store.put(_memory("one", "python basics", entities=["Python"]))
        store.put(_memory("two", "python python", key_points=["python?"], entities=["Python"]))
        store.put(_memory("three", "rust ownership"))
        results = store.text_search("Python")
        assert [m.conversation_id for m in results] == ["two", "one"]

    def test_text_search_scoped_to_user(self):
        store = InMemoryMemoryStore()
        store.put(_memory("a", "react hooks", user_id="u1"))
        store.put(_memory("b", "react router", user_id="u2"))
        assert [m.conversation_id for m in store.text_search("react", "u2")] == ["b"]

    def test_text_search_empty_query(self):
        store = InMemoryMemoryStore()
        store.put(_memory("a", "react hooks"))
        assert store.text_search("   ") == []

    def test_pattern_search_substring(self):
        store = InMemoryMemoryStore()
        store.put(_memory("a", "nothing", entities=["TypeScript"]))
        store.put(_memory("b", "nothing", key_points=["How to type things?"]))
        store.put(_memory("c", "nothing"))
        results = store.pattern_search("TYPE")
        assert {m.conversation_id for m in results} == {"a", "b"}

    def test_pattern_search_treats_query_literally(self):
        store = InMemoryMemoryStore()
        store.put(_memory("a", "uses C++ daily"))
        store.put(_memory("b", "uses C daily"))
        assert [m.conversation_id for m in store.pattern_search("c++")] == ["a"]

    def test_pattern_search_limit(self):
        store = InMemoryMemoryStore()
        for i in range(8):
            store.put(_memory(f"c{i}", "docker compose"))
        assert len(store.pattern_search("docker", limit=5)) == 5


# ── Postgres Store Tests ──


class TestPostgresStore:
    def _store(self, rows=None, rowcount=1):
        conn = MagicMock()
        cur = conn.cursor.return_value.__enter__.return_value
        cur.fetchone.return_value = rows[0] if rows else None
        cur.fetchall.return_value = rows or []
        cur.rowcount = rowcount
        return PostgresMemoryStore(conn), cur

    def test_setup_creates_table_and_index(self):
        _store, cur = self._store()
        executed = " ".join(call.args[0] for call in cur.execute.call_args_list)
        assert "CREATE TABLE IF NOT EXISTS conversation_memories" in executed
        assert "to_tsvector" in executed

    def test_setup_failure_is_logged_not_raised(self):
        conn = MagicMock()
        conn.cursor.side_effect = RuntimeError("db down")
        PostgresMemoryStore(conn)

    def test_get_dict_row(self):
        row = {
            "conversation_id": "c1",
            "user_id": "u1",
            "summary": "s",
            "key_points": ["k"],
            "entities": ["E"],
            "created_at": None,
            "updated_at": None,
        }
        store, _cur = self._store(rows=[row])
        memory = store.get("c1")
        assert memory.conversation_id == "c1"
        assert memory.key_points == ["k"]

    def test_get_missing(self):
        store, _cur = self._store(rows=None)
        assert store.get("c1") is None

    def test_put_duplicate(self):
        store, _cur = self._store(rowcount=0)
        with pytest.raises(DuplicateMemory):
            store.put(_memory("c1", "s"))

    def test_upsert_uses_on_conflict(self):
        row = ("c1", None, "s", [], [], None, None)
        store, cur = self._store(rows=[row])
        store.upsert(_memory("c1", "s"))
        sql = cur.execute.call_args.args[0]
        assert "ON CONFLICT (conversation_id) DO UPDATE" in sql
        assert "created_at = " not in sql

    def test_pattern_search_escapes_wildcards(self):
        store, cur = self._store(rows=[])
        store.pattern_search("100%_done", user_id="u1", limit=5)
        params = cur.execute.call_args.args[1]
        assert params[0] == "%100\\%\\_done%"
        assert params[-2:] == ["u1", 5]

    def test_text_search_orders_by_rank(self):
        store, cur = self._store(rows=[])
        store.text_search("react hooks", limit=3)
        sql, params = cur.execute.call_args.args
        assert "ts_rank" in sql
        assert params == ["react hooks", 3]


# ── Memory Service Tests ──


class TestMemoryService:
    def test_create_memory(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        memory = service.create_memory("conv-1", CONVERSATION, user_id="u1")
        assert memory.user_id == "u1"
        assert memory.created_at == memory.updated_at
        assert memory.key_points == ["How do I use React hooks?"]
        assert "App.js" in memory.entities
        assert service.get_memory("conv-1") == memory

    def test_create_duplicate(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        service.create_memory("conv-1", CONVERSATION)
        with pytest.raises(DuplicateMemory):
            service.create_memory("conv-1", CONVERSATION)

    def test_update_creates_when_absent(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        memory = service.update_memory("conv-1", CONVERSATION)
        assert memory.created_at == memory.updated_at

    def test_update_preserves_created_at(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        first = service.update_memory("conv-1", CONVERSATION[:1])
        created_at = first.created_at
        second = service.update_memory("conv-1", CONVERSATION)
        assert second.created_at == created_at
        assert second.updated_at > created_at
        assert "App.js" in second.entities

    def test_update_regenerates_summary(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        service.update_memory("conv-1", [{"role": "assistant", "content": "Welcome!"}])
        assert service.get_memory("conv-1").summary == "No user messages"
        service.update_memory("conv-1", CONVERSATION)
        assert service.get_memory("conv-1").summary.startswith("Conversation started with")

    def test_get_missing(self):
        service = MemoryService(InMemoryMemoryStore())
        assert service.get_memory("nope") is None

    def test_delete_is_idempotent(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        service.update_memory("conv-1", CONVERSATION)
        service.delete_memory("conv-1")
        service.delete_memory("conv-1")
        assert service.get_memory("conv-1") is None

    def test_search_memories(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        service.update_memory("react", CONVERSATION, user_id="u1")
        service.update_memory("rust", [{"role": "user", "content": "Explain Rust lifetimes"}], user_id="u1")
        results = service.search_memories("react", user_id="u1")
        assert [m.conversation_id for m in results] == ["react"]

    def test_search_limit_defaults_to_config(self):
        store = MagicMock()
        store.text_search.return_value = []
        service = MemoryService(store, ContextConfig(search_limit=7))
        service.search_memories("react")
        store.text_search.assert_called_once_with("react", None, 7)

    def test_search_limit_zero_passed_through(self):
        store = MagicMock()
        store.text_search.return_value = []
        service = MemoryService(store, ContextConfig(search_limit=7))
        assert service.search_memories("react", limit=0) == []
        store.text_search.assert_called_once_with("react", None, 0)

    def test_get_relevant_context_capped(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        for i in range(7):
            service.update_memory(f"conv-{i}", CONVERSATION)
        assert len(service.get_relevant_context("hooks")) == 5

    def test_blank_inputs_rejected(self):
        service = MemoryService(InMemoryMemoryStore())
        with pytest.raises(ValidationError):
            service.update_memory("", CONVERSATION)
        with pytest.raises(ValidationError):
            service.get_memory("  ")
        with pytest.raises(ValidationError):
            service.search_memories("")
        with pytest.raises(ValidationError):
            service.update_memory("conv-1", "not a list")

    def test_store_errors_become_internal_errors(self):
        service = MemoryService(_failing_store())
        with pytest.raises(InternalError):
            service.create_memory("conv-1", CONVERSATION)
        with pytest.raises(InternalError):
            service.update_memory("conv-1", CONVERSATION)
        with pytest.raises(InternalError):
            service.get_memory("conv-1")
        with pytest.raises(InternalError):
            service.delete_memory("conv-1")
        with pytest.raises(InternalError):
            service.search_memories("react")
        with pytest.raises(InternalError):
            service.get_relevant_context("react")

    def test_format_context(self):
        memory = _memory("c1", "A chat.", key_points=["Why?"], entities=["React", "Vue"])
        assert format_context(memory) == (
            "Previous conversation context: A chat.\n"
            "Key points: Why?\n"
            "Entities: React, Vue\n\n"
        )

    def test_get_context_text(self, clock):
        service = MemoryService(InMemoryMemoryStore(), clock=clock)
        assert service.get_context_text("conv-1") == ""
        service.update_memory("conv-1", CONVERSATION)
        assert service.get_context_text("conv-1").startswith("Previous conversation context:")


# ── Middleware Tests ──


class TestChatContextMiddleware:
    def _middleware(self, clock, store=None, **config):
        service = MemoryService(store or InMemoryMemoryStore(), ContextConfig(**config), clock=clock)
        return ChatContextMiddleware(service)

    def test_prepare_without_memory(self, clock):
        middleware = self._middleware(clock)
        result = middleware.prepare(CONVERSATION, "gpt-4o", "conv-1")
        assert [m.content for m in result] == [m["content"] for m in CONVERSATION]

    def test_prepare_injects_memory(self, clock):
        middleware = self._middleware(clock)
        middleware.finalize("conv-1", CONVERSATION[:1], "Use hooks.", "gpt-4o")
        result = middleware.prepare(CONVERSATION, "gpt-4o", "conv-1")
        assert result[0].id == MEMORY_MESSAGE_ID
        assert result[0].content.startswith("Previous conversation context:")
        assert len(result) == 3

    def test_prepare_memory_disabled(self, clock):
        middleware = self._middleware(clock, enable_memory=False)
        middleware.memory_service.update_memory("conv-1", CONVERSATION)
        result = middleware.prepare(CONVERSATION, "gpt-4o", "conv-1")
        assert all(m.id != MEMORY_MESSAGE_ID for m in result)

    def test_prepare_survives_memory_failure(self, clock):
        middleware = self._middleware(clock, store=_failing_store())
        result = middleware.prepare(CONVERSATION, "gpt-4o", "conv-1")
        assert len(result) == 2

    def test_prepare_validates_messages(self, clock):
        middleware = self._middleware(clock)
        with pytest.raises(ValidationError):
            middleware.prepare([], "gpt-4o")
        with pytest.raises(ValidationError):
            middleware.prepare(None, "gpt-4o")

    def test_prepare_completion_inlines_attachments(self, clock):
        middleware = self._middleware(clock)
        messages = [
            Message(
                role=Role.USER,
                content="Summarise this",
                attachments=[FileAttachment(name="notes.txt", mime_type="text/plain", text_content="hello")],
            )
        ]
        payload = middleware.prepare_completion(messages, "gpt-4o")
        assert payload == [{
            "role": "user",
            "content": "Summarise this\n\n--- File: notes.txt ---\nhello\n--- End of notes.txt ---",
        }]

    def test_prepare_langchain(self, clock):
        middleware = self._middleware(clock)
        result = middleware.prepare_langchain(CONVERSATION, "gpt-4o")
        assert [type(m).__name__ for m in result] == ["HumanMessage", "AIMessage"]

    def test_finalize_upserts_twice(self, clock):
        middleware = self._middleware(clock)
        first = middleware.finalize("conv-1", CONVERSATION[:1], "Use hooks.", "gpt-4o")
        second = middleware.finalize("conv-1", CONVERSATION, "Sure, see App.js", "gpt-4o")
        assert second.created_at == first.created_at
        assert second.updated_at > first.created_at

    def test_finalize_survives_memory_failure(self, clock):
        middleware = self._middleware(clock, store=_failing_store())
        assert middleware.finalize("conv-1", CONVERSATION, "reply") is None

    def test_finalize_survives_malformed_attachments(self, clock):
        middleware = self._middleware(clock)
        messages = [{"role": "user", "content": "hi", "attachments": [{"name": "a.bin", "sizeBytes": "12kb"}]}]
        assert middleware.finalize("conv-1", messages, "reply") is None
        assert middleware.memory_service.get_memory("conv-1") is None

    def test_load_memory_context_survives_unexpected_error(self):
        service = MagicMock()
        service.get_context_text.side_effect = ValueError("bad row")
        middleware = ChatContextMiddleware(service, ContextConfig())
        assert middleware.load_memory_context("conv-1") == ""
        assert len(middleware.prepare(CONVERSATION, "gpt-4o", "conv-1")) == 2

    def test_prepare_rejects_malformed_attachments(self, clock):
        middleware = self._middleware(clock)
        messages = [{"role": "user", "content": "hi", "attachments": [{"name": "a.txt", "textContent": 123}]}]
        with pytest.raises(ValidationError):
            middleware.prepare(messages, "gpt-4o")

    def test_finalize_without_conversation_id(self, clock):
        middleware = self._middleware(clock)
        assert middleware.finalize(None, CONVERSATION, "reply") is None

    def test_without_memory_service(self):
        middleware = ChatContextMiddleware()
        assert middleware.memory_enabled is False
        assert len(middleware.prepare(CONVERSATION, "gpt-4o", "conv-1")) == 2
        assert middleware.finalize("conv-1", CONVERSATION, "reply") is None

    def test_from_env_in_memory(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("MEMORY_RELEVANT_LIMIT", "3")
        middleware = ChatContextMiddleware.from_env()
        assert isinstance(middleware.memory_service.store, InMemoryMemoryStore)
        assert middleware.config.relevant_context_limit == 3
