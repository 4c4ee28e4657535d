"""Token estimation used for prompt budgeting."""

from __future__ import annotations

import math

# Average bytes per token for English prose (GPT-style tokenization)
BYTES_PER_TOKEN = 4.0


def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in ``text``.

    Budget decisions use this byte heuristic rather than a real tokenizer so
    that the same input always truncates the same way.

    Returns:
        0 for empty text, otherwise at least 1.
    """
    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / BYTES_PER_TOKEN))


__all__ = ["BYTES_PER_TOKEN", "estimate_tokens"]
