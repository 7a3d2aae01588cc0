"""
Unit tests for source tokenization and best-match resolution.

Tests pattern ordering, wildcard placement and the token count guard.
"""

import pytest

from billing_collector.core.tokens import (
    MAX_TOKENS,
    TokenizedSource,
    UnsupportedCardinality,
    find_best_match,
    generate_patterns
)


def _best(reference, candidates):
    match = find_best_match(
        TokenizedSource.parse(reference),
        [TokenizedSource.parse(c) for c in candidates]
    )
    return None if match is None else str(match)


class TestTokenizedSource:
    """Test TokenizedSource parsing."""

    def test_parse_splits_on_colon(self):
        """Verify a source is split into ordered tokens."""
        source = TokenizedSource.parse("pg:exoscale:org:ns:startup-4")
        assert source.tokens == ("pg", "exoscale", "org", "ns", "startup-4")
        assert len(source) == 5

    def test_str_joins_tokens(self):
        """Verify the string form reproduces the source."""
        assert str(TokenizedSource.parse("a:*:c")) == "a:*:c"

    def test_equal_tokens_are_equal(self):
        assert TokenizedSource.parse("a:b") == TokenizedSource(("a", "b"))

    def test_empty_tokens_are_kept(self):
        assert TokenizedSource.parse("a::c").tokens == ("a", "", "c")


class TestGeneratePatterns:
    """Test specificity ordering of generated patterns."""

    def test_four_token_order(self):
        """Verify literal prefixes come first and rightmost wildcards before leftmost."""
        patterns = [str(p) for p in generate_patterns(TokenizedSource.parse("a:b:c:d"))]
        assert patterns == [
            "a:b:c:d",
            "a:b:*:d",
            "a:*:c:d",
            "a:*:*:d",
            "a:b:c",
            "a:*:c",
            "a:b",
            "a",
        ]

    def test_first_and_last_tokens_never_wildcarded(self):
        """Verify wildcards only replace interior positions of each prefix."""
        for pattern in generate_patterns(TokenizedSource.parse("a:b:c:d:e")):
            assert pattern.tokens[0] == "a"
            assert pattern.tokens[-1] != "*"

    def test_pattern_count(self):
        """Verify a prefix of length i > 2 yields 2^(i-2) patterns."""
        patterns = generate_patterns(TokenizedSource.parse("a:b:c:d:e"))
        assert len(patterns) == 8 + 4 + 2 + 1 + 1

    def test_single_token(self):
        assert [str(p) for p in generate_patterns(TokenizedSource.parse("a"))] == ["a"]

    def test_max_tokens_supported(self):
        """Verify the largest supported reference still generates patterns."""
        reference = TokenizedSource.parse(":".join(str(i) for i in range(MAX_TOKENS)))
        patterns = generate_patterns(reference)
        assert str(patterns[0]) == str(reference)
        assert len(patterns) == sum(1 << max(i - 2, 0) for i in range(1, MAX_TOKENS + 1))

    def test_too_many_tokens_raises_error(self):
        """Verify references with more than MAX_TOKENS tokens are rejected."""
        reference = TokenizedSource.parse(":".join(str(i) for i in range(MAX_TOKENS + 1)))
        with pytest.raises(UnsupportedCardinality, match="No more than 10 tokens") as exc_info:
            generate_patterns(reference)
        assert exc_info.value.token_count == 11

    def test_unsupported_cardinality_is_value_error(self):
        reference = TokenizedSource(tuple("abcdefghijk"))
        with pytest.raises(ValueError):
            find_best_match(reference, [])


class TestFindBestMatch:
    """Test best-match resolution against candidate rules."""

    @pytest.mark.parametrize("candidates,expected", [
        (["a", "a:b", "a:*:c"], "a:*:c"),
        (["a", "a:x", "a:*:y"], "a"),
        (["a", "a:b"], "a:b"),
        (["x", "x:y"], None),
        ([], None),
        (["a:b:c:d"], "a:b:c:d"),
        (["a:b:c", "a:b:c:d"], "a:b:c:d"),
        (["a:b:c", "a:b:c:d", "a:b:*:d"], "a:b:c:d"),
        (["a:b:*:d", "a:b:c", "a:b:c:d", "a:b:*:d"], "a:b:c:d"),
        (["a:b:*:d", "a:*:c:d"], "a:b:*:d"),
        (["a:b:c:d", "a:b:*:d"], "a:b:c:d"),
        (["a:b:*:d", "a:b:c:d"], "a:b:c:d"),
        (["a:*:c:d", "a:b:*:d"], "a:b:*:d"),
        (["a:*:c:d", "a:*:*:d"], "a:*:c:d"),
        (["a:*:*:d", "a:*:c:d"], "a:*:c:d"),
        (["a:*:*:d", "a:b:c"], "a:*:*:d"),
        (["a:b:c", "a:*:*:d"], "a:*:*:d"),
        (["a:b:c", "a:*:c"], "a:b:c"),
        (["a:*:c", "a:b:c"], "a:b:c"),
        (["a:b", "a:*:c"], "a:*:c"),
        (["a:*:c", "a:b"], "a:*:c"),
        (["a:b", "a"], "a:b"),
    ])
    def test_best_match_for_four_tokens(self, candidates, expected):
        """Verify the most specific candidate wins regardless of candidate order."""
        assert _best("a:b:c:d", candidates) == expected

    def test_dbaas_plan_rule(self):
        """Verify a per-plan product matches any organization and namespace."""
        candidates = ["pg:exoscale:*:*:startup-4", "pg:exoscale:*:*:business-4", "pg"]
        assert _best("pg:exoscale:acme:shop:startup-4", candidates) == "pg:exoscale:*:*:startup-4"

    def test_falls_back_to_query_token(self):
        assert _best("pg:exoscale:acme:shop:hobbyist-2", ["pg"]) == "pg"

    def test_returns_candidate_instance(self):
        """Verify the returned object is the candidate, not the pattern."""
        candidate = TokenizedSource.parse("a:*:c")
        match = find_best_match(TokenizedSource.parse("a:b:c"), [candidate])
        assert match is candidate
