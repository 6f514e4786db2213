"""
Context budgeter.

Fits an arbitrarily long message history into the prompt budget of a model:

- System messages are always kept, in order, and charged unconditionally.
- An optional memory context is injected as a system message right after them.
- The remaining messages are walked newest-first and kept until the first one
  that would exceed the budget; everything older than that is dropped.

The original list is never modified.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..errors import ValidationError
from ..models import Message, Role
from .config import ContextConfig
from .token_budget import TokenBudget, calculate_budget, estimate_message_tokens

logger = logging.getLogger(__name__)

MEMORY_MESSAGE_ID = "memory-context"


@dataclass
class BudgetResult:
    """Outcome of one budgeting pass."""

    messages: list[Message]
    budget: TokenBudget
    used_tokens: int = 0  # system + retained non-system messages
    dropped: list[Message] = field(default_factory=list)


def make_memory_message(memory_context: str) -> Message:
    return Message(role=Role.SYSTEM, content=memory_context, id=MEMORY_MESSAGE_ID)


class ContextBudgeter:
    """
    Selects the messages that fit the model's prompt budget.

    Usage:
        budgeter = ContextBudgeter(config)
        trimmed = budgeter.apply(messages, "gpt-4o", memory_context)
        # Send trimmed messages to the completion service
    """

    def __init__(self, config: Optional[ContextConfig] = None):
        self.config = config or ContextConfig()

    def apply(
        self,
        messages: Sequence,
        model_id: str = "",
        memory_context: str = "",
    ) -> list[Message]:
        return self.plan(messages, model_id, memory_context).messages

    def plan(
        self,
        messages: Sequence,
        model_id: str = "",
        memory_context: str = "",
    ) -> BudgetResult:
        """Budget ``messages`` and report what was kept and dropped."""
        if not isinstance(messages, (list, tuple)):
            raise ValidationError("messages must be a list")

        history = [Message.coerce(m) for m in messages]
        budget = calculate_budget(self.config, model_id, memory_context)

        system_msgs = []
        conversation_msgs = []
        for msg in history:
            if msg.is_system:
                system_msgs.append(msg)
            else:
                conversation_msgs.append(msg)

        available = budget.total - sum(estimate_message_tokens(m) for m in system_msgs)
        used = budget.total - available

        result = list(system_msgs)
        if memory_context:
            result.append(make_memory_message(memory_context))

        # Walk backwards from the most recent message
        kept = []
        total_tokens = 0
        for msg in reversed(conversation_msgs):
            msg_tokens = estimate_message_tokens(msg)
            if total_tokens + msg_tokens > available:
                break
            kept.append(msg)
            total_tokens += msg_tokens
        kept.reverse()

        dropped = conversation_msgs[: len(conversation_msgs) - len(kept)]
        result.extend(kept)

        if dropped:
            logger.info(
                "Dropped %d of %d messages to fit budget (%d/%d tokens, model=%s)",
                len(dropped),
                len(conversation_msgs),
                used + total_tokens,
                budget.total,
                model_id or "default",
            )
        else:
            logger.debug(
                "All %d messages fit in budget (%d/%d tokens), no trimming needed",
                len(conversation_msgs),
                used + total_tokens,
                budget.total,
            )

        return BudgetResult(
            messages=result,
            budget=budget,
            used_tokens=used + total_tokens,
            dropped=dropped,
        )


def trim_messages(
    messages: Sequence,
    model_id: str = "",
    memory_context: str = "",
    config: Optional[ContextConfig] = None,
) -> list[Message]:
    """Functional form of ``ContextBudgeter.apply``."""
    return ContextBudgeter(config).apply(messages, model_id, memory_context)
