"""
Context manager configuration and model context window mappings.
"""

import os
from dataclasses import dataclass

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Base tier
    "gpt-3.5-turbo": 4_096,
    "gpt-4": 8_192,
    # Extended tier
    "gpt-3.5-turbo-16k": 16_384,
    "gpt-4-32k": 32_768,
    # Large-context tier
    "gpt-4-turbo": 128_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
}

DEFAULT_CONTEXT_WINDOW = 4_096


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class ContextConfig:
    """Configuration for context budgeting and memory extraction."""

    # Context window (0 = auto-detect from model name)
    context_window: int = 0

    # Fraction of the window available to the prompt; the rest is left for the reply
    reserve_fraction: float = 0.7

    # Memory injection on/off
    enable_memory: bool = True

    # Memory derivation caps
    summary_prefix_chars: int = 100
    max_question_points: int = 5
    max_code_points: int = 3
    max_entity_matches: int = 10  # per matcher

    # Lookup limits
    search_limit: int = 10
    relevant_context_limit: int = 5

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            context_window=int(os.getenv("CONTEXT_WINDOW", "0")),
            reserve_fraction=float(os.getenv("CONTEXT_RESERVE_FRACTION", "0.7")),
            enable_memory=_env_bool("MEMORY_ENABLED", "true"),
            summary_prefix_chars=int(os.getenv("MEMORY_SUMMARY_PREFIX_CHARS", "100")),
            max_question_points=int(os.getenv("MEMORY_MAX_QUESTION_POINTS", "5")),
            max_code_points=int(os.getenv("MEMORY_MAX_CODE_POINTS", "3")),
            max_entity_matches=int(os.getenv("MEMORY_MAX_ENTITY_MATCHES", "10")),
            search_limit=int(os.getenv("MEMORY_SEARCH_LIMIT", "10")),
            relevant_context_limit=int(os.getenv("MEMORY_RELEVANT_LIMIT", "5")),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        if not model_name:
            return DEFAULT_CONTEXT_WINDOW
        # Exact match first, then the longest known prefix (dated snapshots)
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        prefixes = [key for key in MODEL_CONTEXT_WINDOWS if model_name.startswith(key)]
        if prefixes:
            return MODEL_CONTEXT_WINDOWS[max(prefixes, key=len)]
        return DEFAULT_CONTEXT_WINDOW
