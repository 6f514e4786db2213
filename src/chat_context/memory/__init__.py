"""
Conversation context management.

- Context budgeter: fits a message history into a model's prompt budget,
  always keeping system messages and the most recent turns.
- Memory extractor: derives a compact digest (summary, key points, entities)
  of a conversation and stores it per conversation id, so that dropped turns
  can still be represented in the prompt.
"""

from .budgeter import BudgetResult, ContextBudgeter, trim_messages
from .config import ContextConfig, MODEL_CONTEXT_WINDOWS
from .extractor import ENTITY_MATCHERS, MemoryDigest, derive_memory
from .middleware import ChatContextMiddleware
from .service import MemoryService, format_context
from .store import InMemoryMemoryStore, MemoryStore, PostgresMemoryStore
from .token_budget import (
    TokenBudget,
    calculate_budget,
    estimate_message_tokens,
    estimate_tokens,
)

__all__ = [
    "BudgetResult",
    "ChatContextMiddleware",
    "ContextBudgeter",
    "ContextConfig",
    "ENTITY_MATCHERS",
    "InMemoryMemoryStore",
    "MODEL_CONTEXT_WINDOWS",
    "MemoryDigest",
    "MemoryService",
    "MemoryStore",
    "PostgresMemoryStore",
    "TokenBudget",
    "calculate_budget",
    "derive_memory",
    "estimate_message_tokens",
    "estimate_tokens",
    "format_context",
    "trim_messages",
]
