"""
Chat context middleware.

Sits in front of the completion call of a chat request handler:

1. prepare(): fetch the conversation's memory (non-fatal), then budget the
   message history against the model's context window.
2. The caller sends the trimmed messages to the completion service.
3. finalize(): append the reply and upsert the memory record (non-fatal).

Memory is an enhancement: a failing memory store never blocks a reply.
"""

import logging
import os
from typing import Optional, Sequence

from dotenv import load_dotenv

from ..attachments import to_completion_messages, to_langchain_messages
from ..errors import ValidationError
from ..models import ConversationMemory, Message, Role
from .budgeter import ContextBudgeter
from .config import ContextConfig
from .service import MemoryService
from .store import InMemoryMemoryStore, PostgresMemoryStore

logger = logging.getLogger(__name__)


class ChatContextMiddleware:
    """
    Usage:
        middleware = ChatContextMiddleware(MemoryService(store), config)
        payload = middleware.prepare_completion(messages, model_id, conversation_id)
        # ... call the completion service with payload ...
        middleware.finalize(conversation_id, messages, completion, model_id)
    """

    def __init__(
        self,
        memory_service: Optional[MemoryService] = None,
        config: Optional[ContextConfig] = None,
    ):
        self.config = config or (memory_service.config if memory_service else ContextConfig())
        self.memory_service = memory_service
        self.budgeter = ContextBudgeter(self.config)

    @classmethod
    def from_env(cls) -> "ChatContextMiddleware":
        """
        Build from environment variables (and a .env file if present).

        Uses PostgreSQL when DATABASE_URL is set, otherwise an in-process store.
        """
        load_dotenv()
        config = ContextConfig.from_env()
        store = InMemoryMemoryStore()
        db_url = os.getenv("DATABASE_URL")
        if db_url:
            try:
                store = PostgresMemoryStore.connect(db_url)
            except Exception as e:
                logger.warning(
                    "Failed to connect memory store to PostgreSQL: %s. "
                    "Falling back to in-memory store.",
                    e,
                )
        return cls(MemoryService(store, config), config)

    @property
    def memory_enabled(self) -> bool:
        return self.memory_service is not None and self.config.enable_memory

    def load_memory_context(self, conversation_id: Optional[str]) -> str:
        """Memory text for the conversation, or "" when unavailable."""
        if not conversation_id or not self.memory_enabled:
            return ""
        try:
            return self.memory_service.get_context_text(conversation_id)
        except Exception as e:
            logger.error("Error retrieving memory for conversation %s: %s", conversation_id, e)
            return ""

    def prepare(
        self,
        messages: Sequence,
        model_id: str = "",
        conversation_id: Optional[str] = None,
    ) -> list[Message]:
        """Trimmed message list for the completion call."""
        if not isinstance(messages, (list, tuple)):
            raise ValidationError("Messages are required")
        if not messages:
            raise ValidationError("Messages are required")

        memory_context = self.load_memory_context(conversation_id)
        return self.budgeter.apply(messages, model_id, memory_context)

    def prepare_completion(
        self,
        messages: Sequence,
        model_id: str = "",
        conversation_id: Optional[str] = None,
    ) -> list[dict]:
        """``{role, content}`` payload with attachments inlined."""
        return to_completion_messages(self.prepare(messages, model_id, conversation_id))

    def prepare_langchain(
        self,
        messages: Sequence,
        model_id: str = "",
        conversation_id: Optional[str] = None,
    ) -> list:
        """Trimmed history as LangChain messages, ready for ``chat_model.invoke``."""
        return to_langchain_messages(self.prepare(messages, model_id, conversation_id))

    def finalize(
        self,
        conversation_id: Optional[str],
        messages: Sequence,
        completion: str,
        model_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[ConversationMemory]:
        """
        Upsert the conversation memory after a reply was produced.

        Returns the stored record, or None when memory is disabled or failed.
        """
        if not conversation_id or not self.memory_enabled:
            return None
        try:
            history = [Message.coerce(m) for m in messages]
            if completion:
                history.append(
                    Message(role=Role.ASSISTANT, content=completion, model=model_id or None)
                )
            return self.memory_service.update_memory(conversation_id, history, user_id)
        except Exception as e:
            logger.error("Error updating memory for conversation %s: %s", conversation_id, e)
            return None
