"""
Attachment inlining for the completion service.

Each trimmed message is reduced to ``{role, content}`` with its attachments
rendered into the content: extracted text between file markers, or a
bracketed placeholder for images and files with no extractable text.
"""

from typing import Iterable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .models import FileAttachment, Message, Role


def render_attachment(attachment: FileAttachment) -> str:
    if attachment.text_content:
        return (
            f"\n\n--- File: {attachment.name} ---\n"
            f"{attachment.text_content}\n"
            f"--- End of {attachment.name} ---"
        )
    if attachment.is_image:
        return f"\n\n[Image attached: {attachment.name} - Please analyze this image]"
    return (
        f"\n\n[File attached: {attachment.name} ({attachment.mime_type})"
        " - Please help me with this file]"
    )


def inline_attachments(msg: Message) -> str:
    """Message content followed by every rendered attachment."""
    return msg.content + "".join(render_attachment(a) for a in msg.attachments)


def to_completion_messages(messages: Iterable[Message]) -> list[dict]:
    """Reduce messages to the ``{role, content}`` shape of a chat completion call."""
    return [
        {"role": msg.role.value, "content": inline_attachments(msg)}
        for msg in messages
    ]


def to_langchain_messages(messages: Iterable[Message]) -> list[BaseMessage]:
    """Convert messages to LangChain message objects for a chat model."""
    converted = []
    for msg in messages:
        content = inline_attachments(msg)
        if msg.role is Role.SYSTEM:
            converted.append(SystemMessage(content=content, id=msg.id))
        elif msg.role is Role.USER:
            converted.append(HumanMessage(content=content, id=msg.id))
        else:
            converted.append(AIMessage(content=content, id=msg.id))
    return converted
