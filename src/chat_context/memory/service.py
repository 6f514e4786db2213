"""
Conversation memory service.

Derives a memory record from a conversation's messages and keeps it in the
injected store. The record is always recomputed from the full message list,
never patched incrementally.

Read and search paths propagate ``InternalError``; callers on the chat path
should treat write failures as non-fatal (see ``ChatContextMiddleware``).
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from ..errors import DuplicateMemory, InternalError, ValidationError
from ..models import ConversationMemory
from .config import ContextConfig
from .extractor import derive_memory
from .store import MemoryStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_context(memory: ConversationMemory) -> str:
    """Render a memory record as text for injection into the prompt."""
    return (
        f"Previous conversation context: {memory.summary}\n"
        f"Key points: {', '.join(memory.key_points)}\n"
        f"Entities: {', '.join(memory.entities)}\n\n"
    )


def _require(value: Optional[str], name: str) -> str:
    if not value or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return value


class MemoryService:
    """
    Creates, updates and looks up conversation memories.

    Usage:
        service = MemoryService(InMemoryMemoryStore())
        service.update_memory("conv-1", messages)
        context = service.get_context_text("conv-1")
    """

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[ContextConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.config = config or ContextConfig()
        self._clock = clock

    def _build(
        self,
        conversation_id: str,
        messages: Sequence,
        user_id: Optional[str],
    ) -> ConversationMemory:
        if not isinstance(messages, (list, tuple)):
            raise ValidationError("messages must be a list")
        digest = derive_memory(messages, self.config)
        now = self._clock()
        return ConversationMemory(
            conversation_id=conversation_id,
            user_id=user_id,
            summary=digest.summary,
            key_points=digest.key_points,
            entities=digest.entities,
            created_at=now,
            updated_at=now,
        )

    def create_memory(
        self,
        conversation_id: str,
        messages: Sequence,
        user_id: Optional[str] = None,
    ) -> ConversationMemory:
        """Create the memory record; fails if one already exists."""
        _require(conversation_id, "conversation_id")
        memory = self._build(conversation_id, messages, user_id)
        try:
            if self.store.get(conversation_id) is not None:
                raise DuplicateMemory(conversation_id)
            self.store.put(memory)
        except DuplicateMemory:
            raise
        except Exception as e:
            logger.warning("Failed to create memory for conversation %s: %s", conversation_id, e)
            raise InternalError(f"Failed to create memory: {e}") from e
        logger.info("Created memory for conversation %s", conversation_id)
        return memory

    def update_memory(
        self,
        conversation_id: str,
        messages: Sequence,
        user_id: Optional[str] = None,
    ) -> ConversationMemory:
        """Recompute and upsert the record; created_at is kept on overwrite."""
        _require(conversation_id, "conversation_id")
        memory = self._build(conversation_id, messages, user_id)
        try:
            stored = self.store.upsert(memory)
        except Exception as e:
            logger.warning("Failed to update memory for conversation %s: %s", conversation_id, e)
            raise InternalError(f"Failed to update memory: {e}") from e
        logger.debug(
            "Updated memory for conversation %s (%d key points, %d entities)",
            conversation_id,
            len(stored.key_points),
            len(stored.entities),
        )
        return stored

    def get_memory(self, conversation_id: str) -> Optional[ConversationMemory]:
        _require(conversation_id, "conversation_id")
        try:
            return self.store.get(conversation_id)
        except Exception as e:
            logger.warning("Failed to load memory for conversation %s: %s", conversation_id, e)
            raise InternalError(f"Failed to load memory: {e}") from e

    def delete_memory(self, conversation_id: str) -> None:
        """Delete the record; deleting an absent record is not an error."""
        _require(conversation_id, "conversation_id")
        try:
            self.store.delete(conversation_id)
        except Exception as e:
            logger.warning("Failed to delete memory for conversation %s: %s", conversation_id, e)
            raise InternalError(f"Failed to delete memory: {e}") from e

    def search_memories(
        self,
        query: str,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ConversationMemory]:
        """Full-text relevance search, most relevant first."""
        _require(query, "query")
        try:
            if limit is None:
                limit = self.config.search_limit
            return self.store.text_search(query, user_id, limit)
        except Exception as e:
            logger.warning("Memory search failed: %s", e)
            raise InternalError(f"Memory search failed: {e}") from e

    def get_relevant_context(
        self,
        query: str,
        user_id: Optional[str] = None,
    ) -> list[ConversationMemory]:
        """
        Cheaper keyword lookup: case-insensitive substring match, no ranking,
        capped at ``relevant_context_limit`` records.
        """
        _require(query, "query")
        try:
            return self.store.pattern_search(
                query, user_id, self.config.relevant_context_limit
            )
        except Exception as e:
            logger.warning("Relevant context lookup failed: %s", e)
            raise InternalError(f"Relevant context lookup failed: {e}") from e

    def get_context_text(self, conversation_id: str) -> str:
        """Injectable memory text for a conversation, or "" if none exists."""
        memory = self.get_memory(conversation_id)
        return format_context(memory) if memory else ""
