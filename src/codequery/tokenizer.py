"""Natural-language query tokenizer."""

import re

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "shall",
    "should", "may", "might", "must", "can", "could", "to", "of", "in",
    "for", "on", "with", "at", "by", "from", "as", "into", "through",
    "during", "before", "after", "above", "below", "between", "out",
    "off", "up", "down", "that", "this", "these", "those", "it", "its",
    "and", "but", "or", "nor", "not", "so", "yet", "both", "either",
    "neither", "each", "every", "all", "any", "few", "more", "most",
    "other", "some", "such", "no", "only", "same", "than", "too",
    "very", "just", "find", "show", "get", "where", "how", "what",
    "which", "who", "whom", "why", "when", "me", "my", "i",
})

MIN_TERM_LENGTH = 3

_NON_TERM_CHARS = re.compile(r"[^a-z0-9_\s-]")


def tokenize_query(query: str) -> frozenset[str]:
    """Split a query into lowercase search terms.

    Punctuation other than `_` and `-` separates words; words shorter than
    MIN_TERM_LENGTH and stop words are dropped. The result is a set: only
    membership matters downstream.
    """
    cleaned = _NON_TERM_CHARS.sub(" ", query.lower())
    return frozenset(
        word for word in cleaned.split()
        if len(word) >= MIN_TERM_LENGTH and word not in STOP_WORDS
    )
