"""
Data records exchanged with the context manager.

Messages arrive as camelCase mappings from an HTTP body (or as LangChain
messages) and are normalised into the dataclasses below.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .errors import ValidationError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value) -> "Role":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(f"Unknown message role: {value!r}") from None


# LangChain message class -> role
_LANGCHAIN_ROLES: dict[type, Role] = {
    SystemMessage: Role.SYSTEM,
    HumanMessage: Role.USER,
    AIMessage: Role.ASSISTANT,
}


def _content_str(content) -> str:
    """Flatten LangChain message content (str or list of blocks) into text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "\n".join(p for p in parts if p)


def parse_timestamp(value) -> Optional[datetime]:
    """Accept datetimes, ISO-8601 strings (with optional trailing Z) or epoch millis."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}") from None
    raise ValidationError(f"Invalid timestamp: {value!r}")


@dataclass
class FileAttachment:
    """A file attached to a message, with extracted text when available."""

    name: str
    size_bytes: int = 0
    mime_type: str = "application/octet-stream"
    url: str = ""
    text_content: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @classmethod
    def from_dict(cls, data: dict) -> "FileAttachment":
        if isinstance(data, FileAttachment):
            return data
        if not isinstance(data, dict):
            raise ValidationError("Attachment must be an object")
        name = data.get("name")
        if not name or not isinstance(name, str):
            raise ValidationError("Attachment name is required")

        raw_size = data.get("sizeBytes", data.get("size", 0)) or 0
        if isinstance(raw_size, bool):
            raise ValidationError(f"Invalid attachment size: {raw_size!r}")
        try:
            size_bytes = int(raw_size)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid attachment size: {raw_size!r}") from e

        mime_type = data.get("mimeType") or data.get("type") or "application/octet-stream"
        text_content = data.get("textContent")
        url = data.get("url") or ""
        for key, value in (("mimeType", mime_type), ("url", url)):
            if not isinstance(value, str):
                raise ValidationError(f"Attachment {key} must be a string")
        if text_content is not None and not isinstance(text_content, str):
            raise ValidationError("Attachment textContent must be a string")

        return cls(
            name=name,
            size_bytes=size_bytes,
            mime_type=mime_type,
            url=url,
            text_content=text_content,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "sizeBytes": self.size_bytes,
            "mimeType": self.mime_type,
            "url": self.url,
            "textContent": self.text_content,
        }


def _parse_attachments(raw) -> list[FileAttachment]:
    if not raw:
        return []
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("Message attachments must be a list")
    return [FileAttachment.from_dict(a) for a in raw]


@dataclass
class Message:
    """One turn in a conversation."""

    role: Role
    content: str = ""
    id: Optional[str] = None
    timestamp: Optional[datetime] = None
    attachments: list[FileAttachment] = field(default_factory=list)
    model: Optional[str] = None

    def __post_init__(self):
        self.role = Role.parse(self.role)
        if self.content is None:
            self.content = ""
        if not self.content and not self.attachments:
            raise ValidationError("Message content may be empty only when attachments are present")

    @property
    def is_system(self) -> bool:
        return self.role is Role.SYSTEM

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        if not isinstance(data, dict):
            raise ValidationError("Message must be an object")
        if "role" not in data:
            raise ValidationError("Message role is required")
        content = data.get("content") or ""
        if not isinstance(content, str):
            raise ValidationError("Message content must be a string")
        return cls(
            role=Role.parse(data["role"]),
            content=content,
            id=data.get("id"),
            timestamp=parse_timestamp(data.get("timestamp")),
            attachments=_parse_attachments(data.get("attachments")),
            model=data.get("model"),
        )

    @classmethod
    def from_langchain(cls, msg: BaseMessage) -> "Message":
        role = None
        for msg_type, mapped in _LANGCHAIN_ROLES.items():
            if isinstance(msg, msg_type):
                role = mapped
                break
        if role is None:
            raise ValidationError(f"Unsupported message type: {type(msg).__name__}")
        return cls(role=role, content=_content_str(msg.content), id=msg.id)

    @classmethod
    def coerce(cls, item: Any) -> "Message":
        """Normalise a Message, a mapping or a LangChain message."""
        if isinstance(item, Message):
            return item
        if isinstance(item, BaseMessage):
            return cls.from_langchain(item)
        return cls.from_dict(item)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "attachments": [a.to_dict() for a in self.attachments],
            "model": self.model,
        }


@dataclass
class ConversationMemory:
    """Compact digest of a conversation, one record per conversation id."""

    conversation_id: str
    summary: str
    key_points: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "ConversationMemory":
        """Create from a store row (dict row or positional tuple)."""
        if isinstance(row, dict):
            return cls(
                conversation_id=row["conversation_id"],
                user_id=row.get("user_id"),
                summary=row["summary"],
                key_points=list(row.get("key_points") or []),
                entities=list(row.get("entities") or []),
                created_at=row.get("created_at"),
                updated_at=row.get("updated_at"),
            )
        conversation_id, user_id, summary, key_points, entities, created_at, updated_at = row[:7]
        return cls(
            conversation_id=conversation_id,
            user_id=user_id,
            summary=summary,
            key_points=list(key_points or []),
            entities=list(entities or []),
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_dict(self) -> dict:
        return {
            "conversationId": self.conversation_id,
            "userId": self.user_id,
            "summary": self.summary,
            "keyPoints": list(self.key_points),
            "entities": list(self.entities),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
