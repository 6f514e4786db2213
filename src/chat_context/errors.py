"""
Error taxonomy for the context manager.

- ValidationError: malformed or missing input, surfaced as a client error.
- InternalError: persistence or extraction failure.
- DuplicateMemory: a memory record already exists for the conversation.
"""


class ChatContextError(Exception):
    """Base class for all context-manager errors."""


class ValidationError(ChatContextError):
    """Raised for structurally invalid input (never retried)."""


class InternalError(ChatContextError):
    """Raised when the memory store or extraction fails."""


class DuplicateMemory(ChatContextError):
    """Raised by create when a memory record already exists."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Memory already exists for conversation {conversation_id!r}")
        self.conversation_id = conversation_id
