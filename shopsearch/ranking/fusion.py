"""Result fusion for hybrid product search.

Combines the lexical (fuzzy) and vector (semantic) candidate lists with
weighted Reciprocal Rank Fusion and adds an exact-match bonus computed from
the product name. The bonus ladder is configured so that a higher bonus tier
always outranks a lower one whatever the rrf contribution.
"""

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import structlog

from ..catalog.base import DocumentSummary
from ..common.config import RankingConfig
from .similarity import normalize_text, string_similarity, tokenize

if TYPE_CHECKING:
    from .tiering import TierLabel

logger = structlog.get_logger("search_fusion")


@dataclass(frozen=True)
class FusionScore:
    """Per-document scoring detail. Absent ranks are ``math.inf``."""
    fuzzy_rank: float
    vector_rank: float
    rrf_score: float
    exact_match_bonus: float = 0.0
    match_type: Optional[str] = None
    soft_category_matches: int = 0
    tier: Optional["TierLabel"] = None

    @property
    def fusion_key(self) -> float:
        return self.exact_match_bonus + self.rrf_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fuzzy_rank": None if math.isinf(self.fuzzy_rank) else int(self.fuzzy_rank),
            "vector_rank": None if math.isinf(self.vector_rank) else int(self.vector_rank),
            "rrf_score": self.rrf_score,
            "exact_match_bonus": self.exact_match_bonus,
            "match_type": self.match_type,
            "soft_category_matches": self.soft_category_matches,
            "tier": self.tier.value if self.tier is not None else None,
        }


@dataclass(frozen=True)
class FusedResult:
    """A fused candidate: the document, its score and its first-appearance order."""
    document: DocumentSummary
    score: FusionScore
    order: int
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def id(self) -> str:
        return self.document.id


def clean_query_text(query: str, removable_terms: Sequence[str] = ()) -> str:
    """Strip hard-filter vocabulary words and purely numeric tokens from a query.

    Used to score names against what the shopper typed about the product
    itself, without "red wine under 100" style filter words.
    """
    remove = set()
    for term in removable_terms:
        remove.update(tokenize(term))
    kept = []
    for token in tokenize(query):
        if token in remove:
            continue
        if token.replace(".", "", 1).replace(",", "").isdigit():
            continue
        kept.append(token)
    return " ".join(kept)


class ExactMatchScorer:
    """Assigns the exact-match bonus tier for a (name, query) pair."""

    def __init__(self, config: RankingConfig):
        self.config = config

    def score(self, name: str, query: str, cleaned_query: str = "") -> tuple:
        """Return ``(bonus, match_type)``; ``(0.0, None)`` when nothing matches."""
        cfg = self.config
        name_lower = (name or "").lower().strip()
        query_lower = (query or "").lower().strip()
        cleaned_lower = (cleaned_query or "").lower().strip()
        if not name_lower or not query_lower:
            return 0.0, None

        if name_lower == query_lower:
            return cfg.bonus_exact, "exact"
        if cleaned_lower and name_lower == cleaned_lower:
            return cfg.bonus_cleaned_exact, "cleaned_exact"
        if query_lower in name_lower:
            return cfg.bonus_contains_full, "contains_full"
        if cleaned_lower and cleaned_lower in name_lower:
            return cfg.bonus_contains_cleaned, "contains_cleaned"

        query_words = query_lower.split()
        # phrase match ignores spacing differences
        if len(query_words) > 1 and " ".join(query_words) in normalize_text(name_lower):
            return cfg.bonus_phrase, "phrase"

        # below here the query as a whole is not in the name
        min_len = cfg.fuzzy_min_token_length
        if len(query_words[0]) >= min_len and name_lower.startswith(query_words[0]):
            return cfg.bonus_prefix, "prefix"

        for word in query_words:
            if len(word) >= min_len:
                position = name_lower.find(word)
                if 0 <= position <= cfg.early_occurrence_max_position:
                    return cfg.bonus_early_occurrence, "early_occurrence"

        if len(query_lower) >= min_len and len(name_lower) >= min_len:
            threshold = cfg.fuzzy_similarity_threshold
            if string_similarity(query_lower, name_lower[:cfg.fuzzy_prefix_chars]) >= threshold:
                return cfg.bonus_fuzzy, "fuzzy"
            for word in name_lower.split():
                if len(word) >= min_len and string_similarity(query_lower, word) >= threshold:
                    return cfg.bonus_fuzzy, "fuzzy"

        return 0.0, None


class ScoreFusionEngine:
    """Weighted Reciprocal Rank Fusion plus exact-match bonus."""

    def __init__(self, config: Optional[RankingConfig] = None):
        self.config = config or RankingConfig()
        self.scorer = ExactMatchScorer(self.config)

    def vector_weight(self, query: str) -> float:
        """Descriptive queries lean on the semantic list."""
        if len(tokenize(query)) >= self.config.long_query_min_words:
            return self.config.vector_weight_long_query
        return self.config.vector_weight_default

    def rrf_score(self, fuzzy_rank: float, vector_rank: float, weight: float = 1.0) -> float:
        c = self.config.rrf_constant
        lexical_term = 0.0 if math.isinf(fuzzy_rank) else 1.0 / (c + fuzzy_rank)
        vector_term = 0.0 if math.isinf(vector_rank) else 1.0 / (c + vector_rank)
        return lexical_term + weight * vector_term

    def fuse(
        self,
        lexical_results: Sequence[DocumentSummary],
        vector_results: Sequence[DocumentSummary],
        query: str,
        cleaned_query: str = "",
    ) -> List[FusedResult]:
        """Fuse two ranked lists. Ranks are 0-based list positions.

        Only documents present in at least one list are scored. The result is
        sorted by ``exact_match_bonus + rrf_score`` descending, ties broken by
        rrf score and then first-appearance order (lexical list, then
        vector-only documents in vector order).
        """
        weight = self.vector_weight(query)

        lexical_ranks: Dict[str, int] = {}
        vector_ranks: Dict[str, int] = {}
        documents: Dict[str, DocumentSummary] = {}
        order: List[str] = []

        for rank, doc in enumerate(lexical_results):
            if doc.id in lexical_ranks:
                continue
            lexical_ranks[doc.id] = rank
            documents[doc.id] = doc
            order.append(doc.id)

        for rank, doc in enumerate(vector_results):
            if doc.id in vector_ranks:
                continue
            vector_ranks[doc.id] = rank
            if doc.id not in documents:
                documents[doc.id] = doc
                order.append(doc.id)
            elif documents[doc.id].embedding is None and doc.embedding is not None:
                documents[doc.id] = doc

        fused = []
        for position, doc_id in enumerate(order):
            doc = documents[doc_id]
            fuzzy_rank = lexical_ranks.get(doc_id, math.inf)
            vector_rank = vector_ranks.get(doc_id, math.inf)
            bonus, match_type = self.scorer.score(doc.name, query, cleaned_query)
            score = FusionScore(
                fuzzy_rank=fuzzy_rank,
                vector_rank=vector_rank,
                rrf_score=self.rrf_score(fuzzy_rank, vector_rank, weight),
                exact_match_bonus=bonus,
                match_type=match_type,
            )
            fused.append(FusedResult(
                document=doc,
                score=score,
                order=position,
                metadata={"fusion_details": {
                    "fusion_algorithm": "rrf",
                    "k_parameter": self.config.rrf_constant,
                    "vector_weight": weight,
                }},
            ))

        fused.sort(key=lambda r: (-r.score.fusion_key, -r.score.rrf_score, r.order))

        logger.info(
            "RRF fusion completed",
            lexical_count=len(lexical_results),
            vector_count=len(vector_results),
            fused_count=len(fused),
            k_parameter=self.config.rrf_constant,
            vector_weight=weight,
        )

        return fused
