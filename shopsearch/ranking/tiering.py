"""Confidence tiers and soft-category ordering for fused results."""

from dataclasses import replace
from enum import Enum
from typing import List, Optional, Sequence

import structlog

from ..catalog.filters import count_soft_category_matches
from ..common.config import RankingConfig
from .fusion import FusedResult

logger = structlog.get_logger("relevance_tiering")


class TierLabel(Enum):
    """Match confidence tiers."""
    HIGH_CONFIDENCE = "high_confidence"
    RELATED = "related"


class RelevanceTieringPolicy:
    """Labels and orders fused results.

    Simple queries are tiered: a result is HighConfidence when its exact
    match bonus is above the phrase threshold, or when the vector engine
    ranks it near the top while the lexical engine misses it (the
    cross-vocabulary case). Complex queries are not tiered.

    Both query classes are ordered by bonus, then soft-category matches,
    rrf and first-appearance order. The tier is a label only.
    Soft categories only reorder; they never remove a result.
    """

    def __init__(self, config: Optional[RankingConfig] = None):
        self.config = config or RankingConfig()

    def classify(self, result: FusedResult) -> TierLabel:
        cfg = self.config
        if result.score.exact_match_bonus > cfg.tier1_bonus_threshold:
            return TierLabel.HIGH_CONFIDENCE
        if (result.score.vector_rank <= cfg.tier1_vector_rank_max
                and result.score.fuzzy_rank > cfg.tier1_fuzzy_rank_min):
            return TierLabel.HIGH_CONFIDENCE
        return TierLabel.RELATED

    def apply(
        self,
        results: Sequence[FusedResult],
        is_simple: bool,
        soft_categories: Sequence[str] = (),
    ) -> List[FusedResult]:
        """Return a new, ordered list with tier labels and soft match counts set."""
        labelled = []
        for result in results:
            soft_matches = count_soft_category_matches(result.document.soft_categories, soft_categories)
            tier = self.classify(result) if is_simple else None
            labelled.append(replace(
                result,
                score=replace(result.score, soft_category_matches=soft_matches, tier=tier),
            ))

        labelled.sort(key=lambda r: (
            -r.score.exact_match_bonus,
            -r.score.soft_category_matches,
            -r.score.rrf_score,
            r.order,
        ))

        logger.debug(
            "Tiering applied",
            is_simple=is_simple,
            result_count=len(labelled),
            high_confidence=sum(1 for r in labelled if r.score.tier is TierLabel.HIGH_CONFIDENCE),
            soft_categories=list(soft_categories),
        )
        return labelled


def high_confidence(results: Sequence[FusedResult], bonus_threshold: float) -> List[FusedResult]:
    """Tier-1 results for either query class: labelled HighConfidence, or above ``bonus_threshold``."""
    return [
        r for r in results
        if r.score.tier is TierLabel.HIGH_CONFIDENCE or r.score.exact_match_bonus > bonus_threshold
    ]
