"""String similarity helpers shared by bonus scoring and fuzzy lexical search."""

import re
from typing import List

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text.strip().lower())


def tokenize(text: str) -> List[str]:
    normalized = normalize_text(text)
    return normalized.split(" ") if normalized else []


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """``(maxLen - editDistance) / maxLen``; 1.0 for two empty strings."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein_distance(a, b)) / max_len
