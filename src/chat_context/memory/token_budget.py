"""
Token estimation and budget calculation.

The estimate is ``ceil(chars / 4)``: a deliberate approximation, not a real
tokenizer. It is used consistently everywhere in the package so that budgets
are reproducible.
"""

import math
from dataclasses import dataclass

from ..models import FileAttachment, Message
from .config import ContextConfig

CHARS_PER_TOKEN = 4

# Cost of an attachment that has no extracted text (bare filename placeholder)
ATTACHMENT_PLACEHOLDER_TOKENS = 8


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_attachment_tokens(attachment: FileAttachment) -> int:
    if attachment.text_content:
        return estimate_tokens(attachment.text_content)
    return ATTACHMENT_PLACEHOLDER_TOKENS


def estimate_message_tokens(msg: Message) -> int:
    """Estimate tokens for a message, including its attachments."""
    total = estimate_tokens(msg.content)
    for attachment in msg.attachments:
        total += estimate_attachment_tokens(attachment)
    return total


@dataclass
class TokenBudget:
    """Token budget for one completion request."""

    context_window: int
    prompt_max: int  # floor(context_window * reserve_fraction)
    memory_tokens: int
    total: int  # prompt_max - memory_tokens, before system messages


def calculate_budget(
    config: ContextConfig,
    model_name: str,
    memory_context: str = "",
) -> TokenBudget:
    """
    Calculate the token budget for non-memory messages.

    Available = floor(context_window * reserve_fraction) - memory_context
    The remainder of the window is left for the model's response.
    """
    context_window = config.get_context_window(model_name)
    prompt_max = math.floor(context_window * config.reserve_fraction)
    memory_tokens = estimate_tokens(memory_context)

    return TokenBudget(
        context_window=context_window,
        prompt_max=prompt_max,
        memory_tokens=memory_tokens,
        total=prompt_max - memory_tokens,
    )
