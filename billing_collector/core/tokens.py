"""
Source string tokenization and best-match resolution.

Picks the most specific catalog rule for a colon-delimited source string.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

DELIMITER = ":"
WILDCARD = "*"

# Pattern generation is exponential in the token count.
MAX_TOKENS = 10


class UnsupportedCardinality(ValueError):
    """Raised when a reference source has more tokens than can be matched."""
    def __init__(self, source: str, token_count: int):
        super().__init__(
            f"No more than {MAX_TOKENS} tokens supported, '{source}' has {token_count}"
        )
        self.source = source
        self.token_count = token_count


@dataclass(frozen=True)
class TokenizedSource:
    """Colon-delimited identifier kept as an ordered tuple of tokens."""
    tokens: Tuple[str, ...]

    @classmethod
    def parse(cls, source: str) -> "TokenizedSource":
        """Split a source string such as ``query:zone:tenant:namespace``."""
        return cls(tuple(source.split(DELIMITER)))

    def __str__(self) -> str:
        return DELIMITER.join(self.tokens)

    def __len__(self) -> int:
        return len(self.tokens)


def generate_patterns(reference: TokenizedSource) -> List[TokenizedSource]:
    """Generate match patterns for a reference, most specific first.

    For every prefix length from the full reference down to a single token the
    literal prefix comes first, followed by every combination of interior
    positions replaced with the wildcard. Combinations are counted like a
    binary number whose lowest bit is the rightmost wildcardable position, so
    wildcards on the right are tried before wildcards on the left. The first
    and the last token of a prefix are never wildcarded.

    Args:
        reference: Fully specified source to generate patterns for

    Returns:
        Ordered list of patterns

    Raises:
        UnsupportedCardinality: If the reference has more than MAX_TOKENS tokens
    """
    if len(reference) > MAX_TOKENS:
        raise UnsupportedCardinality(str(reference), len(reference))

    patterns = []
    for i in range(len(reference), 0, -1):
        prefix = reference.tokens[:i]
        patterns.append(TokenizedSource(prefix))
        if i <= 2:
            continue

        for j in range(1, 1 << (i - 2)):
            wildcarded = list(prefix)
            for p in range(i - 2):
                if j & (1 << p):
                    wildcarded[i - 2 - p] = WILDCARD
            patterns.append(TokenizedSource(tuple(wildcarded)))

    return patterns


def find_best_match(
    reference: TokenizedSource,
    candidates: Iterable[TokenizedSource]
) -> Optional[TokenizedSource]:
    """Return the candidate matching the most specific pattern of a reference.

    Candidates do not need to be sorted; specificity comes from the pattern
    order alone.

    Args:
        reference: Fully specified source to resolve
        candidates: Catalog sources, possibly containing wildcards

    Returns:
        The best matching candidate, or None if no pattern matches

    Raises:
        UnsupportedCardinality: If the reference has more than MAX_TOKENS tokens
    """
    candidates = list(candidates)
    for pattern in generate_patterns(reference):
        wanted = str(pattern)
        for candidate in candidates:
            if str(candidate) == wanted:
                return candidate
    return None
