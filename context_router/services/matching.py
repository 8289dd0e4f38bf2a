"""
Pluggable name matching and string similarity strategies.
"""

import re
from typing import List, Optional

POSSESSIVE_SUFFIX = re.compile(r"['’]s$", re.IGNORECASE)

# Match kinds in precedence order, with the confidence each one earns
MATCH_EXACT = 'exact'
MATCH_FIRST_TOKEN = 'first_token'
MATCH_SUBSTRING = 'substring'
MATCH_CONFIDENCE = {
    MATCH_EXACT: 0.9,
    MATCH_FIRST_TOKEN: 0.85,
    MATCH_SUBSTRING: 0.8,
}
MATCH_PRECEDENCE = [MATCH_EXACT, MATCH_FIRST_TOKEN, MATCH_SUBSTRING]


def strip_possessive(value: str) -> str:
    """'John's' -> 'John'. Handles straight and curly apostrophes."""
    return POSSESSIVE_SUFFIX.sub('', value.strip())


def is_possessive(value: str) -> bool:
    return bool(POSSESSIVE_SUFFIX.search(value.strip()))


def tokenize(value: str) -> List[str]:
    """Lowercase word tokens with possessive markers and punctuation removed."""
    words = []
    for word in value.lower().split():
        word = strip_possessive(word)
        word = re.sub(r'[^\w]', '', word)
        if word:
            words.append(word)
    return words


class NameMatcher:
    """Fuzzy name matching: exact, then first token, then substring containment."""

    def match(self, full_name: str, search_name: str) -> Optional[str]:
        """Classify how search_name matches full_name.

        Returns:
            One of the MATCH_* kinds, or None when the names do not match
        """
        full = full_name.lower().strip()
        search = search_name.lower().strip()
        if not full or not search:
            return None

        if full == search:
            return MATCH_EXACT
        if full.split()[0] == search:
            return MATCH_FIRST_TOKEN
        if search in full or full in search:
            return MATCH_SUBSTRING
        return None


class TokenOverlapSimilarity:
    """Similarity in [0, 1] between a mention and a project or client name.

    1.0 for equal strings, 0.8 when one contains the other (plain substring), otherwise shared
    tokens over the larger token count.
    """

    def score(self, first: str, second: str) -> float:
        if not first or not second:
            return 0.0

        a = ' '.join(tokenize(first))
        b = ' '.join(tokenize(second))
        if not a or not b:
            return 0.0
        if a == b:
            return 1.0
        if a in b or b in a:
            return 0.8

        a_tokens = set(a.split())
        b_tokens = set(b.split())
        shared = a_tokens & b_tokens
        return len(shared) / max(len(a_tokens), len(b_tokens))
