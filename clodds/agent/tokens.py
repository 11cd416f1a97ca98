"""Token estimation.

Pure chars-per-token heuristics, tuned per model family. Good enough for
budget decisions; the context guard's reserve absorbs the error.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from clodds.agent.models import Turn, TurnRole

# Role/formatting overhead added to every turn.
TURN_OVERHEAD_TOKENS = 4

DEFAULT_CHARS_PER_TOKEN = 4.0

# Prefix of model id -> chars per token
_CHARS_PER_TOKEN: tuple[tuple[str, float], ...] = (
    ("claude", 3.5),
    ("gpt-4o", 4.0),
    ("gpt-4", 4.0),
    ("gpt-3.5", 4.0),
    ("o1", 4.0),
    ("llama", 3.8),
    ("mistral", 3.8),
)


def chars_per_token(model: str | None = None) -> float:
    if not model:
        return DEFAULT_CHARS_PER_TOKEN
    lowered = model.lower()
    for prefix, ratio in _CHARS_PER_TOKEN:
        if lowered.startswith(prefix):
            return ratio
    return DEFAULT_CHARS_PER_TOKEN


def estimate_tokens(text: str, model: str | None = None) -> int:
    """Estimate the token cost of text for the given model id."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token(model))


def estimate_turn_tokens(turn: Turn, model: str | None = None) -> int:
    """Cost of a turn: content plus role overhead plus any tool-call arguments."""
    tokens = estimate_tokens(turn.content, model) + TURN_OVERHEAD_TOKENS
    if turn.role == TurnRole.ASSISTANT:
        for call in turn.tool_calls:
            tokens += estimate_tokens(call.name, model)
            tokens += estimate_tokens(str(call.parameters), model)
    return tokens


def estimate_total(turns: Iterable[Turn]) -> int:
    return sum(t.approx_tokens for t in turns)


def tokens_to_chars(tokens: int, model: str | None = None) -> int:
    return int(tokens * chars_per_token(model))
