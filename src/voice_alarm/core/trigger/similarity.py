from __future__ import annotations

from collections import Counter


def bigrams(text: str) -> Counter[str]:
    """Multiset of 2-character substrings of the lower-cased text."""
    lowered = text.lower()
    return Counter(lowered[i : i + 2] for i in range(len(lowered) - 1))


def similarity(a: str, b: str) -> float:
    """Dice coefficient over bigram multisets, in 0.0..1.0.

    Inputs shorter than 2 characters contribute no bigrams; when neither side
    has any the score is 0.0.
    """
    left = bigrams(a)
    right = bigrams(b)
    total = sum(left.values()) + sum(right.values())
    if total == 0:
        return 0.0
    overlap = sum((left & right).values())
    return 2.0 * overlap / total
