"""Token counting using the cl100k_base encoding.

The count is an approximation for non-OpenAI models (usually within ~10%),
which is enough for budgeting as long as every consumer uses the same counter.
"""

from __future__ import annotations

from typing import Callable

import tiktoken

TokenCounter = Callable[[str], int]

_ENCODER = None


def _encoder():
    global _ENCODER
    if _ENCODER is None:
        _ENCODER = tiktoken.get_encoding("cl100k_base")
    return _ENCODER


def count_tokens(text: str) -> int:
    """Return the number of tokens in text."""
    if not text:
        return 0
    return len(_encoder().encode(text, disallowed_special=()))


def count_tokens_batch(texts: list[str], counter: TokenCounter = count_tokens) -> int:
    """Return the total number of tokens across texts."""
    return sum(counter(t) for t in texts)


def truncate_to_token_budget(
    text: str,
    max_tokens: int,
    counter: TokenCounter = count_tokens,
) -> tuple[str, int]:
    """Truncate text to fit within max_tokens.

    Args:
        text: The text to truncate
        max_tokens: Token budget
        counter: Token counting function

    Returns:
        Tuple of (truncated text, its token count)
    """
    tokens = counter(text)
    if tokens <= max_tokens:
        return text, tokens

    # Binary search for the longest prefix that fits
    low, high = 0, len(text)
    best_text, best_tokens = "", 0
    while low < high:
        mid = (low + high) // 2
        candidate = text[:mid]
        count = counter(candidate)
        if count <= max_tokens:
            best_text, best_tokens = candidate, count
            low = mid + 1
        else:
            high = mid

    return best_text, best_tokens
