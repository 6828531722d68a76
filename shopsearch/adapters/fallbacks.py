"""Deterministic local fallbacks for AI capabilities.

Each fallback is pure and never raises. They offer reduced capability so
callers do not need to know whether the AI or the fallback answered.
"""

import re
from typing import List, Optional, Sequence

from ..catalog.filters import FilterSet, HardFilters

_NUMBER = r'(\d+(?:[.,]\d+)?)'

_RANGE_PATTERNS = [
    re.compile(_NUMBER + r'\s*(?:-|–|to|עד)\s*' + _NUMBER, re.IGNORECASE),
    re.compile(r'(?:between|בין)\s*' + _NUMBER + r'\s*(?:and|ל|-)\s*' + _NUMBER, re.IGNORECASE),
]
_MAX_PATTERN = re.compile(
    r'(?:\b(?:under|below|less\s+than|up\s+to|max(?:imum)?)|עד|מתחת\s+ל|פחות\s+מ)\s*-?\s*' + _NUMBER,
    re.IGNORECASE,
)
_MIN_PATTERN = re.compile(
    r'(?:\b(?:from|over|above|more\s+than|min(?:imum)?)|החל\s+מ|מעל|יותר\s+מ|(?:^|\s)מ)\s*-?\s*' + _NUMBER,
    re.IGNORECASE,
)
_EXACT_PATTERN = re.compile(
    r'(?:\b(?:around|about|approximately)|באיזור|בסביבות|(?:^|\s)ב)\s*-?\s*' + _NUMBER,
    re.IGNORECASE,
)

_INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'add\s+the\s+word\s+\w+',
        r'include\s+\w+\s+under',
        r'say\s+\w+',
        r'write\s+\w+',
        r'append\s+\w+',
        r'insert\s+\w+',
        r'format\s+as',
        r'respond\s+with',
        r'output\s+\w+',
        r'return\s+\w+',
        r'explain\s+that',
        r'mention\s+\w+',
    )
]


def classify_by_word_count(query: str, max_words: int = 2) -> bool:
    """True (simple) for short queries without digits."""
    words = query.split()
    if not words:
        return True
    return len(words) <= max_words and not any(ch.isdigit() for ch in query)


def extract_price_filters(query: str) -> FilterSet:
    """Pull numeric price constraints out of a query with regexes.

    Recognizes ranges ("100-200", "between 100 and 200"), upper bounds
    ("under 100", "עד 100"), lower bounds ("from 100", "מעל 100") and an
    approximate price ("around 100"). Never sets category or type.
    """
    text = query or ""
    for pattern in _RANGE_PATTERNS:
        match = pattern.search(text)
        if match:
            low, high = _to_number(match.group(1)), _to_number(match.group(2))
            if low is not None and high is not None:
                if low > high:
                    low, high = high, low
                return FilterSet(hard=HardFilters(min_price=low, max_price=high))

    max_match = _MAX_PATTERN.search(text)
    min_match = _MIN_PATTERN.search(text)
    max_price = _to_number(max_match.group(1)) if max_match else None
    min_price = _to_number(min_match.group(1)) if min_match else None
    if min_price is not None and max_price is not None and min_price > max_price:
        min_price, max_price = max_price, min_price
    if max_price is not None or min_price is not None:
        return FilterSet(hard=HardFilters(min_price=min_price, max_price=max_price))

    exact_match = _EXACT_PATTERN.search(text)
    if exact_match:
        price = _to_number(exact_match.group(1))
        if price is not None:
            return FilterSet(hard=HardFilters(price=price))

    return FilterSet()


def keep_fusion_order(candidate_ids: Sequence[str]) -> List[str]:
    return list(candidate_ids)


def identity_translation(query: str) -> str:
    return query


def sanitize_query_for_llm(query: str, max_chars: int = 100) -> str:
    """Strip prompt-injection phrases and cap the length of LLM-bound text.

    If stripping leaves almost nothing, the capped original is used instead.
    """
    cleaned = query or ""
    for pattern in _INJECTION_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.strip()
    if len(cleaned) < 3:
        return (query or "")[:max_chars]
    return cleaned[:max_chars]


def _to_number(raw: str) -> Optional[float]:
    # "1,200" is a thousands separator, "12,5" a decimal comma
    if re.fullmatch(r'\d{1,3}(?:,\d{3})+', raw or ""):
        raw = raw.replace(",", "")
    try:
        value = float(raw.replace(",", "."))
    except (AttributeError, ValueError):
        return None
    return value if value >= 0 else None
