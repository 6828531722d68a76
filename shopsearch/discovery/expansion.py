"""Embedding-seeded discovery expansion for complex queries.

A confirmed literal match is a better similarity anchor than the query
text. The engine takes the embeddings of strong name matches as seeds,
finds their nearest neighbours under the same hard filters as the original
query, and merges those with the soft-category candidates. Documents found
by both paths get the larger dual-source boost.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from ..catalog.base import DocumentSummary, VectorSearchProvider
from ..catalog.filters import HardFilters
from ..common.config import RankingConfig
from ..common.metrics import RankingMetrics
from ..ranking.fusion import FusedResult, FusionScore
from ..ranking.tiering import high_confidence

logger = structlog.get_logger("discovery_expansion")

SOFT_CATEGORY_PATH = "soft_category"
SIMILARITY_PATH = "similarity"


@dataclass(frozen=True)
class DiscoverySeed:
    source_document_id: str
    embedding_vector: Tuple[float, ...]
    origin_tier: str = "high_confidence"


@dataclass(frozen=True)
class DiscoveryCandidate:
    """A tier-2 document with its discovery boost.

    ``score`` is ``None`` for similarity-only documents the primary search
    did not return; they sort as if their fusion score were 0.
    """
    document: DocumentSummary
    boost: float
    sources: Tuple[str, ...]
    score: Optional[FusionScore] = None
    similarity: float = 0.0
    order: int = 0

    @property
    def id(self) -> str:
        return self.document.id

    @property
    def fusion_key(self) -> float:
        return self.score.fusion_key if self.score is not None else 0.0


@dataclass(frozen=True)
class DiscoveryResult:
    seeds: List[DiscoverySeed]
    primary: List[FusedResult]
    related: List[DiscoveryCandidate]
    remainder: List[FusedResult]


class DiscoveryExpansionEngine:
    """Seeds similarity searches from high-confidence matches and merges results.

    Parameters
    - vector_provider: Nearest-neighbour search used for each seed
    - config: ``RankingConfig`` with seed threshold, limits and boosts
    - metrics: Optional ``RankingMetrics``
    """

    def __init__(
        self,
        vector_provider: VectorSearchProvider,
        config: Optional[RankingConfig] = None,
        metrics: Optional[RankingMetrics] = None,
    ):
        self.vector_provider = vector_provider
        self.config = config or RankingConfig()
        self.metrics = metrics

    def select_seeds(self, ranked: Sequence[FusedResult]) -> List[DiscoverySeed]:
        """Up to ``discovery_max_seeds`` strong name matches with embeddings, in rank order."""
        seeds = []
        for result in ranked:
            if len(seeds) >= self.config.discovery_max_seeds:
                break
            if result.score.exact_match_bonus <= self.config.seed_bonus_threshold:
                continue
            if result.document.embedding is None:
                continue
            seeds.append(DiscoverySeed(
                source_document_id=result.id,
                embedding_vector=result.document.embedding,
            ))
        return seeds

    async def expand(
        self,
        ranked: Sequence[FusedResult],
        hard_filters: HardFilters,
    ) -> Optional[DiscoveryResult]:
        """Split ``ranked`` into primary, discovered and remaining results.

        Returns ``None`` when there is no usable seed; the caller keeps the
        plain fusion order then.
        """
        seeds = self.select_seeds(ranked)
        if not seeds:
            self._record("no_seeds")
            return None

        primary = high_confidence(ranked, self.config.tier1_bonus_threshold)
        primary_ids = {r.id for r in primary}
        soft_path = [
            r for r in ranked
            if r.id not in primary_ids and r.score.soft_category_matches > 0
        ]

        neighbours = await self._similar_documents(seeds, hard_filters)
        related = self.merge(
            [r for r in soft_path if self._passes(r.document, hard_filters)],
            {doc_id: hit for doc_id, hit in neighbours.items() if doc_id not in primary_ids},
            fused_scores={r.id: r.score for r in ranked},
        )

        related_ids = {c.id for c in related}
        remainder = [r for r in ranked if r.id not in primary_ids and r.id not in related_ids]

        self._record("expanded")
        logger.info(
            "Discovery expansion completed",
            seed_ids=[s.source_document_id for s in seeds],
            primary_count=len(primary),
            soft_path_count=len(soft_path),
            similarity_count=len(neighbours),
            dual_source_count=sum(1 for c in related if len(c.sources) == 2),
        )
        return DiscoveryResult(seeds=seeds, primary=primary, related=related, remainder=remainder)

    def merge(
        self,
        soft_path: Sequence[FusedResult],
        similar: Dict[str, Tuple[DocumentSummary, float]],
        fused_scores: Optional[Dict[str, FusionScore]] = None,
    ) -> List[DiscoveryCandidate]:
        """Merge the two discovery paths by document id.

        Soft-category documents enter with boost 0, similarity documents
        with the similarity boost, documents on both paths with the
        dual-source boost. Ordered by boost, fusion score, similarity and
        then first appearance. ``fused_scores`` supplies the fusion score of
        similarity-only documents that the primary search also returned.
        """
        cfg = self.config
        fused_scores = fused_scores or {}
        merged: Dict[str, DiscoveryCandidate] = {}
        order = 0

        for result in soft_path:
            merged[result.id] = DiscoveryCandidate(
                document=result.document,
                boost=0.0,
                sources=(SOFT_CATEGORY_PATH,),
                score=result.score,
                order=order,
            )
            order += 1

        for doc_id, (doc, similarity) in similar.items():
            existing = merged.get(doc_id)
            if existing is not None:
                merged[doc_id] = DiscoveryCandidate(
                    document=existing.document,
                    boost=cfg.discovery_dual_source_boost,
                    sources=(SOFT_CATEGORY_PATH, SIMILARITY_PATH),
                    score=existing.score,
                    similarity=similarity,
                    order=existing.order,
                )
            else:
                merged[doc_id] = DiscoveryCandidate(
                    document=doc,
                    boost=cfg.discovery_similarity_boost,
                    sources=(SIMILARITY_PATH,),
                    score=fused_scores.get(doc_id),
                    similarity=similarity,
                    order=order,
                )
                order += 1

        return sorted(
            merged.values(),
            key=lambda c: (-c.boost, -c.fusion_key, -c.similarity, c.order),
        )

    async def _similar_documents(
        self,
        seeds: Sequence[DiscoverySeed],
        hard_filters: HardFilters,
    ) -> Dict[str, Tuple[DocumentSummary, float]]:
        """Neighbours of every seed, keyed by id, keeping the best similarity."""
        responses = await asyncio.gather(
            *(self._neighbours_for_seed(seed, hard_filters) for seed in seeds)
        )
        seed_ids = {seed.source_document_id for seed in seeds}

        found: Dict[str, Tuple[DocumentSummary, float]] = {}
        for seed, neighbours in zip(seeds, responses):
            for doc in neighbours:
                if doc.id in seed_ids:
                    continue
                if not self._passes(doc, hard_filters):
                    continue
                similarity = _cosine_similarity(seed.embedding_vector, doc.embedding)
                current = found.get(doc.id)
                if current is None or similarity > current[1]:
                    found[doc.id] = (doc, similarity)
        return found

    async def _neighbours_for_seed(
        self,
        seed: DiscoverySeed,
        hard_filters: HardFilters,
    ) -> List[DocumentSummary]:
        limit = self.config.discovery_neighbors_per_seed + 1
        pool = max(self.config.vector_min_candidates, limit * self.config.vector_candidate_multiplier)
        try:
            neighbours = await self.vector_provider.search(
                list(seed.embedding_vector), pool, hard_filters, limit
            )
        except Exception as e:
            logger.warning(
                "Seed similarity search failed, skipping seed",
                seed_id=seed.source_document_id,
                error=str(e),
            )
            self._record("seed_failed")
            return []
        neighbours = [doc for doc in neighbours if doc.id != seed.source_document_id]
        return neighbours[:self.config.discovery_neighbors_per_seed]

    def _passes(self, doc: DocumentSummary, hard_filters: HardFilters) -> bool:
        if hard_filters.matches(doc):
            return True
        logger.warning(
            "Dropped discovery candidate violating hard filters",
            document_id=doc.id,
            category=list(doc.category),
            hard_filters=hard_filters.to_dict(),
        )
        return False

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_discovery(outcome)


def _cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)
