"""
Memory derivation.

Builds the compact digest stored for a conversation: a summary, key points
and named entities. All functions here are pure functions of the message
list, so deriving twice from the same history gives identical results.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from ..models import Message, Role
from .config import ContextConfig

NO_USER_MESSAGES = "No user messages"

COMMON_TOPICS = [
    "programming", "coding", "development", "web development", "mobile development",
    "database", "api", "frontend", "backend", "fullstack",
    "javascript", "typescript", "python", "java", "react", "vue", "angular",
    "machine learning", "ai", "data science", "algorithms",
    "design", "ui", "ux", "css", "html",
    "deployment", "devops", "cloud", "aws", "azure", "gcp",
]

CODE_FENCE = "```"
_CODE_LANGUAGE_RE = re.compile(r"```(\w+)")

_PROPER_NOUN_RE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
_FILENAME_RE = re.compile(r"\b\w+\.(?:js|ts|py|java|cpp|html|css)\b")
_TECHNOLOGY_RE = re.compile(
    r"(?<!\w)(?:React|Vue|Angular|Node|Python|JavaScript|TypeScript|Java|C\+\+)(?!\w)"
)
_URL_RE = re.compile(r"\bhttps?://[^\s<>\"']+")
_URL_TRAILING = ".,;:!?)]}"


@dataclass
class MemoryDigest:
    """Content fields of a memory record."""

    summary: str
    key_points: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)


def _full_text(messages: Sequence[Message]) -> str:
    return " ".join(m.content for m in messages)


# ── Summary ──


def extract_topics(messages: Sequence[Message]) -> list[str]:
    """Topics from the fixed vocabulary mentioned anywhere in the conversation."""
    text = _full_text(messages).lower()
    return [topic for topic in COMMON_TOPICS if topic in text]


def generate_summary(messages: Sequence[Message], prefix_chars: int = 100) -> str:
    user_msgs = [m for m in messages if m.role is Role.USER]
    if not user_msgs:
        return NO_USER_MESSAGES

    first = user_msgs[0].content
    opening = first[:prefix_chars] + ("..." if len(first) > prefix_chars else "")
    topics = extract_topics(messages)
    return (
        f'Conversation started with: "{opening}". '
        f"Topics discussed: {', '.join(topics) or 'none'}."
    )


# ── Key points ──


def extract_code_language(content: str) -> str:
    match = _CODE_LANGUAGE_RE.search(content)
    return match.group(1) if match else "code"


def extract_key_points(
    messages: Sequence[Message],
    max_questions: int = 5,
    max_code: int = 3,
) -> list[str]:
    """
    Questions asked by the user (cut after the first ``?``), then one
    ``Code discussion: <language>`` entry per message with a code fence.
    """
    questions = [
        m.content.split("?", 1)[0] + "?"
        for m in messages
        if m.role is Role.USER and "?" in m.content
    ][:max_questions]

    code_points = [
        f"Code discussion: {extract_code_language(m.content)}"
        for m in messages
        if CODE_FENCE in m.content
    ][:max_code]

    return [point for point in questions + code_points if point]


# ── Entities ──


def match_proper_nouns(text: str) -> list[str]:
    """Capitalised word sequences, e.g. ``New York``."""
    return _PROPER_NOUN_RE.findall(text)


def match_filenames(text: str) -> list[str]:
    return [m.group(0) for m in _FILENAME_RE.finditer(text)]


def match_technologies(text: str) -> list[str]:
    return _TECHNOLOGY_RE.findall(text)


def match_urls(text: str) -> list[str]:
    return [url.rstrip(_URL_TRAILING) for url in _URL_RE.findall(text)]


EntityMatcher = Callable[[str], list[str]]

# Applied in this order; results are concatenated then deduplicated
ENTITY_MATCHERS: list[tuple[str, EntityMatcher]] = [
    ("proper_nouns", match_proper_nouns),
    ("filenames", match_filenames),
    ("technologies", match_technologies),
    ("urls", match_urls),
]


def extract_entities(messages: Sequence[Message], max_per_matcher: int = 10) -> list[str]:
    text = _full_text(messages)
    found: list[str] = []
    for _name, matcher in ENTITY_MATCHERS:
        found.extend(matcher(text)[:max_per_matcher])
    return list(dict.fromkeys(e for e in found if e))


def derive_memory(
    messages: Sequence[Message],
    config: Optional[ContextConfig] = None,
) -> MemoryDigest:
    """Compute summary, key points and entities from the full message list."""
    config = config or ContextConfig()
    history = [Message.coerce(m) for m in messages]
    return MemoryDigest(
        summary=generate_summary(history, config.summary_prefix_chars),
        key_points=extract_key_points(
            history, config.max_question_points, config.max_code_points
        ),
        entities=extract_entities(history, config.max_entity_matches),
    )
