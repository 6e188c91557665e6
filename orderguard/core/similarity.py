"""
OrderGuard — Name similarity

Percentage similarity built on Levenshtein distance:

    similarity(a, b) = 100 * (1 - distance(a, b) / max(len(a), len(b)))

Symmetric, bounded to [0, 100] and strictly decreasing as the edit distance
grows for a fixed length.
"""

import re

_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """Lower-case, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", (name or "").strip().lower())


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,               # deletion
                current[j - 1] + 1,            # insertion
                previous[j - 1] + (ca != cb),  # substitution
            ))
        previous = current
    return previous[-1]


def name_similarity(a: str, b: str) -> float:
    """Similarity of two full names in percent, after normalisation."""
    a, b = normalize_name(a), normalize_name(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 100.0
    return round(100.0 * (1 - levenshtein(a, b) / longest), 2)
