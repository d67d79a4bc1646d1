"""Tests for token counting helpers."""

from conftest import word_count
from lorekeeper.tokens import count_tokens, count_tokens_batch, truncate_to_token_budget


def test_empty_text_has_no_tokens():
    assert count_tokens("") == 0
    assert count_tokens(None) == 0


def test_batch_sums_counts():
    assert count_tokens_batch(["one two", "three", ""], word_count) == 3


def test_truncate_keeps_text_within_budget():
    text = "the quick brown fox jumps over the lazy dog"

    kept, tokens = truncate_to_token_budget(text, 4, word_count)

    assert tokens == 4
    assert kept.split() == ["the", "quick", "brown", "fox"]
    assert text.startswith(kept)


def test_truncate_leaves_short_text_alone():
    assert truncate_to_token_budget("a b", 5, word_count) == ("a b", 2)
    assert truncate_to_token_budget("a b", 0, word_count) == ("", 0)
