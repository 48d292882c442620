"""
Token estimation and budget-safe truncation.
"""

import math
from typing import Callable, Optional

CHARS_PER_TOKEN = 4

TokenCounter = Callable[[str], int]


def estimate_tokens(text: Optional[str]) -> int:
    """Estimate tokens as ceil(characters / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def count_tokens(text: Optional[str], counter: Optional[TokenCounter] = None) -> int:
    if not text:
        return 0
    if counter is None:
        return estimate_tokens(text)
    return counter(text)


def truncate_to_tokens(text: str, max_tokens: int, counter: Optional[TokenCounter] = None) -> str:
    """Cut text so that its token count stays within max_tokens.

    Prefers to cut at a line or word boundary in the last fifth of the kept
    text. With a custom counter the cut point is found by binary search.

    Args:
        text: Text to truncate
        max_tokens: Token ceiling
        counter: Optional precise tokenizer, defaults to the character estimate

    Returns:
        The truncated text (unchanged if it already fits)
    """
    if max_tokens <= 0 or not text:
        return ''
    if count_tokens(text, counter) <= max_tokens:
        return text

    if counter is None:
        limit = max_tokens * CHARS_PER_TOKEN
    else:
        low, high = 0, len(text)
        while low < high:
            mid = (low + high + 1) // 2
            if counter(text[:mid]) <= max_tokens:
                low = mid
            else:
                high = mid - 1
        limit = low

    cut = text[:limit]
    boundary = max(cut.rfind('\n'), cut.rfind(' '))
    if boundary >= int(limit * 0.8):
        cut = cut[:boundary]
    return cut.rstrip()
