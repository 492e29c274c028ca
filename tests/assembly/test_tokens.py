# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for token counting and truncation."""

import pytest

from context_stack.assembly.tokens import TokenCounter, approximate_tokens


class TestApproximateTokens:
    """Tests for the word-based approximation."""

    @pytest.mark.parametrize(
        "text,expected",
        [("", 0), ("one", 1), ("one two", 2), ("one two three four", 5), ("a " * 10, 13)],
    )
    def test_counts(self, text, expected):
        """int(words * 1.3)."""
        assert approximate_tokens(text) == expected


class TestTokenCounter:
    """Tests for truncation at word boundaries."""

    def test_truncate_keeps_fitting_text(self):
        """Text within budget should come back unchanged."""
        counter = TokenCounter()
        assert counter.truncate("build the feature", 3) == "build the feature"

    def test_truncate_longest_prefix(self):
        """Truncation should keep the longest word prefix that fits."""
        counter = TokenCounter()
        text = "build the login feature end to end"
        truncated = counter.truncate(text, 5)
        assert truncated == "build the login feature"
        assert counter.count(truncated) <= 5

    def test_truncate_to_nothing(self):
        """A non-positive budget should produce an empty string."""
        counter = TokenCounter()
        assert counter.truncate("build", 0) == ""

    def test_custom_count_function(self):
        """A custom counter (characters) should drive truncation."""
        counter = TokenCounter(len)
        assert counter.count("abc") == 3
        assert counter.truncate("ab cd ef", 5) == "ab cd"
        assert counter.minimal_size("ab cd") == 2
