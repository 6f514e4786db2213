"""
Context manager for a chat application: token budgeting and conversation memory.
"""

from .errors import ChatContextError, DuplicateMemory, InternalError, ValidationError
from .models import ConversationMemory, FileAttachment, Message, Role

__all__ = [
    "ChatContextError",
    "ConversationMemory",
    "DuplicateMemory",
    "FileAttachment",
    "InternalError",
    "Message",
    "Role",
    "ValidationError",
]
