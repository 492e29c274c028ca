# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Token counting and word-boundary truncation.

Uses a simple word-based approximation (~1.3 tokens per word). A real
tokenizer can be plugged in as any ``str -> int`` callable, as long as
the count never decreases when words are appended.
"""

from typing import Callable, Optional

TOKENS_PER_WORD = 1.3


def approximate_tokens(text: str) -> int:
    """Approximate token count: ``int(words * 1.3)``."""
    if not text:
        return 0
    return int(len(text.split()) * TOKENS_PER_WORD)


class TokenCounter:
    """
    Counts size units and truncates text to fit a budget.

    Example:
        >>> counter = TokenCounter()
        >>> counter.count("build the feature")
        3
        >>> counter.truncate("build the feature", 1)
        'build'
    """

    def __init__(self, count_fn: Optional[Callable[[str], int]] = None) -> None:
        """
        Initialize the counter.

        Args:
            count_fn: Custom counting function (defaults to the word approximation)
        """
        self._count_fn = count_fn or approximate_tokens

    def count(self, text: str) -> int:
        return self._count_fn(text)

    def minimal_size(self, text: str) -> int:
        """Size of the shortest non-empty truncation (the first word)."""
        words = text.split()
        return self.count(words[0]) if words else 0

    def truncate(self, text: str, budget: int) -> str:
        """
        Longest word prefix of ``text`` whose size fits ``budget``.

        Returns the text unchanged when it already fits and an empty string
        when not even the first word fits.

        Args:
            text: Text to truncate
            budget: Maximum size

        Returns:
            Truncated text, cut at a word boundary
        """
        if budget <= 0:
            return ""
        if self.count(text) <= budget:
            return text

        words = text.split()
        low, high = 0, len(words)
        while low < high:
            mid = (low + high + 1) // 2
            if self.count(" ".join(words[:mid])) <= budget:
                low = mid
            else:
                high = mid - 1
        return " ".join(words[:low])
