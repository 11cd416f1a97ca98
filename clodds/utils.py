"""Shared utility functions for Clodds."""

from __future__ import annotations

import math
from collections.abc import Sequence


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors. 0.0 for zero-length vectors."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def trim_middle(text: str, max_chars: int) -> str:
    """Keep the head and tail of text, dropping the middle.

    Returns text unchanged when it already fits.
    """
    if len(text) <= max_chars:
        return text
    keep = max(0, max_chars - 80)
    head = keep * 2 // 3
    tail = keep - head
    return (
        f"{text[:head]}\n\n"
        f"--- trimmed (kept {head} head + {tail} tail "
        f"of {len(text)} chars) ---\n\n"
        f"{text[len(text) - tail:] if tail else ''}"
    )
