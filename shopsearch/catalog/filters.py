"""Hard and soft filter model.

Hard filters are mandatory constraints every returned product must satisfy.
Soft categories are ranking hints only; nothing here ever excludes a product
because of them.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

import structlog

logger = structlog.get_logger("catalog.filters")

EXACT_PRICE_TOLERANCE = 0.15

_OR_INDICATORS = [
    r'\band\s+',
    r'\bor\s+',
    r'\bboth\s+',
    r'\beither\s+',
    r'\bmix\s+of',
    r'\bvariety\s+of',
    r'\bassortment\s+of',
    r'\bselection\s+of',
    r'\bdifferent\s+(types|kinds)',
    r'\bfor\s+(party|event|picnic|gathering)',
    r'(?:^|\s)ו(?=\s*[\u0590-\u05FF])',
    r'(?:^|\s)או\s+',
    r'(?:^|\s)גם\s+',
    r'(?:^|\s)מגוון\s+',
    r'(?:^|\s)בחירה\s+',
    r'למסיבה',
    r'לאירוע',
    r'לפיקניק',
]

_AND_INDICATORS = [
    r'\b(french|italian|spanish|greek|german|australian|israeli)\s+(red|white|rosé|sparkling)',
    r'(יין|wine)\s+(צרפתי|איטלקי|ספרדי|יווני|גרמני|אוסטרלי|ישראלי)',
    r'\b(cheap|expensive|premium|budget)\s+(red|white|wine)',
    r'(זול|יקר|פרמיום|תקציבי)\s+(יין|אדום|לבן)',
    r'\b(dry|sweet|semi-dry)\s+(red|white|wine)',
    r'(יבש|מתוק|חצי.יבש)\s+(יין|אדום|לבן)',
]


@dataclass(frozen=True)
class HardFilters:
    """Mandatory constraints on category, type and price.

    ``category_match`` is ``"all"`` (a product must carry every listed
    category) or ``"any"`` (at least one).
    """
    category: Tuple[str, ...] = ()
    type: Tuple[str, ...] = ()
    price: Optional[float] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    category_match: str = "all"

    def is_empty(self) -> bool:
        return not (self.category or self.type or self.has_price())

    def has_price(self) -> bool:
        return self.price is not None or self.min_price is not None or self.max_price is not None

    def price_bounds(self) -> Tuple[float, float]:
        """Inclusive ``(low, high)`` price bounds; an exact price becomes a +/-15% band."""
        if self.min_price is not None or self.max_price is not None:
            low = self.min_price if self.min_price is not None else 0.0
            high = self.max_price if self.max_price is not None else math.inf
            return low, high
        if self.price is not None:
            band = self.price * EXACT_PRICE_TOLERANCE
            return max(0.0, self.price - band), self.price + band
        return 0.0, math.inf

    def matches(self, doc: Any) -> bool:
        """Whether a document satisfies every hard constraint.

        Out-of-stock documents never match.
        """
        stock_status = getattr(doc, "stock_status", None)
        if stock_status is not None and stock_status != "instock":
            return False

        if self.category:
            doc_categories = set(doc.category)
            if self.category_match == "any":
                if not doc_categories.intersection(self.category):
                    return False
            elif not doc_categories.issuperset(self.category):
                return False

        if self.type and not set(doc.type).intersection(self.type):
            return False

        if self.has_price():
            if doc.price is None:
                return False
            low, high = self.price_bounds()
            if not (low <= doc.price <= high):
                return False

        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.category:
            data["category"] = list(self.category)
            data["category_match"] = self.category_match
        if self.type:
            data["type"] = list(self.type)
        for key in ("price", "min_price", "max_price"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HardFilters":
        category_match = data.get("category_match", "all")
        if category_match not in ("all", "any"):
            raise ValueError(f"Unknown category_match: {category_match}")
        return cls(
            category=_string_tuple(data.get("category")),
            type=_string_tuple(data.get("type")),
            price=_optional_price(data.get("price")),
            min_price=_optional_price(data.get("min_price")),
            max_price=_optional_price(data.get("max_price")),
            category_match=category_match,
        )


@dataclass(frozen=True)
class FilterSet:
    """Filters extracted from a query: hard constraints plus soft category hints."""
    hard: HardFilters = HardFilters()
    soft_categories: Tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return self.hard.is_empty() and not self.soft_categories

    def to_dict(self) -> Dict[str, Any]:
        return {"hard": self.hard.to_dict(), "soft": list(self.soft_categories)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FilterSet":
        return cls(
            hard=HardFilters.from_dict(data.get("hard") or {}),
            soft_categories=_string_tuple(data.get("soft")),
        )


@dataclass(frozen=True)
class PromptConfig:
    """Store vocabulary and prompt context handed to filter extraction."""
    categories: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ()
    soft_categories: Tuple[str, ...] = ()
    example: str = ""
    context: str = "e-commerce product search"


def normalize_extracted_filters(
    raw: Mapping[str, Any],
    prompt_config: Optional[PromptConfig] = None,
    query: str = "",
) -> FilterSet:
    """Turn untrusted extraction output into a ``FilterSet``.

    Accepts the camelCase keys the extraction prompt asks for
    (``minPrice``, ``softCategory``) as well as snake_case. Values outside
    the store vocabulary are dropped. Unparseable prices are dropped.
    """
    categories = _string_tuple(raw.get("category"))
    types = _string_tuple(raw.get("type"))
    soft = _string_tuple(raw.get("softCategory", raw.get("soft_categories")))

    if prompt_config is not None:
        categories = _within_vocabulary(categories, prompt_config.categories, "category")
        types = _within_vocabulary(types, prompt_config.types, "type")
        soft = _within_vocabulary(soft, prompt_config.soft_categories, "soft_category")

    min_price = _safe_price(raw.get("minPrice", raw.get("min_price")))
    max_price = _safe_price(raw.get("maxPrice", raw.get("max_price")))
    if min_price is not None and max_price is not None and min_price > max_price:
        min_price, max_price = max_price, min_price

    hard = HardFilters(
        category=categories,
        type=types,
        price=_safe_price(raw.get("price")),
        min_price=min_price,
        max_price=max_price,
        category_match="any" if should_use_or_logic(query, categories) else "all",
    )
    return FilterSet(hard=hard, soft_categories=soft)


def should_use_or_logic(query: str, categories: Sequence[str]) -> bool:
    """Decide whether several categories combine with OR instead of AND.

    OR-indicators ("red or white", "mix of", "for party") and a red+white
    pair vote for OR; nationality/price/sweetness + colour phrases vote
    for AND.
    """
    if not categories or len(categories) < 2:
        return False

    lower_query = query.lower()
    or_score = sum(len(re.findall(p, lower_query)) for p in _OR_INDICATORS)
    and_score = sum(len(re.findall(p, lower_query)) for p in _AND_INDICATORS)

    lowered = [c.lower() for c in categories]
    has_red = any("אדום" in c or "red" in c for c in lowered)
    has_white = any("לבן" in c or "white" in c for c in lowered)
    if has_red and has_white:
        or_score += 2

    return or_score > and_score


def count_soft_category_matches(
    document_soft_categories: Iterable[str],
    query_soft_categories: Iterable[str],
) -> int:
    """Count query soft categories the document matches.

    A query category matches when it contains, or is contained in, one of
    the document's soft categories (case-insensitive).
    """
    doc_cats = [c.lower() for c in document_soft_categories if c]
    if not doc_cats:
        return 0
    matches = 0
    for query_cat in query_soft_categories:
        q = query_cat.lower()
        if not q:
            continue
        if any(q in d or d in q for d in doc_cats):
            matches += 1
    return matches


def _string_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"Expected string or list of strings, got {type(value).__name__}")
    seen = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"Expected string filter value, got {type(item).__name__}")
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return tuple(seen)


def _optional_price(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Price must be a number, got {value!r}")
    if value < 0 or math.isnan(value):
        raise ValueError(f"Price must be a non-negative number, got {value!r}")
    return float(value)


def _safe_price(value: Any) -> Optional[float]:
    if isinstance(value, str):
        try:
            value = float(value.replace(",", ""))
        except ValueError:
            return None
    try:
        return _optional_price(value)
    except ValueError:
        return None


def _within_vocabulary(values: Tuple[str, ...], vocabulary: Tuple[str, ...], kind: str) -> Tuple[str, ...]:
    if not vocabulary:
        return values
    allowed = set(vocabulary)
    kept = tuple(v for v in values if v in allowed)
    if len(kept) != len(values):
        logger.warning(
            "Dropped extracted filter values outside the store vocabulary",
            kind=kind,
            dropped=[v for v in values if v not in allowed],
        )
    return kept
