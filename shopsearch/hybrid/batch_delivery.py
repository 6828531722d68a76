"""Batch delivery for hybrid product search.

Each batch runs a fresh bounded lexical and vector search, fuses and tiers
the results, drops everything the continuation token says was already
delivered and returns the next slice. Nothing is cached between batches;
the token carries the whole cursor, so any worker can serve any batch.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from ..adapters.governor import AIResilienceGovernor
from ..catalog.base import DocumentSummary, EmbeddingProvider, LexicalSearchProvider, VectorSearchProvider
from ..catalog.filters import PromptConfig
from ..common.config import RankingConfig
from ..common.errors import TokenMalformedError, UpstreamSearchError, ValidationError
from ..common.logging import bind_request_context, clear_request_context
from ..common.metrics import RankingMetrics
from ..discovery.expansion import DiscoveryExpansionEngine
from ..intelligence.query_understanding import AITextService, QueryAnalysis, QueryAnalyzer
from ..pagination.token_codec import PaginationTokenCodec
from ..ranking.fusion import FusedResult, FusionScore, ScoreFusionEngine
from ..ranking.tiering import RelevanceTieringPolicy

logger = structlog.get_logger("batch_delivery")


@dataclass(frozen=True)
class RankedDocument:
    """One delivered document with its ranking metadata."""
    document: DocumentSummary
    score: Optional[FusionScore]
    source: str = "fusion"
    discovery_boost: Optional[float] = None

    @property
    def id(self) -> str:
        return self.document.id

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.document.id,
            "name": self.document.name,
            "source": self.source,
        }
        if self.score is not None:
            data.update(self.score.to_dict())
        if self.discovery_boost is not None:
            data["discovery_boost"] = self.discovery_boost
        return data


@dataclass(frozen=True)
class BatchResponse:
    documents: List[RankedDocument]
    has_more: bool
    next_token: Optional[str]
    batch_number: int
    query_class: str

    @property
    def ids(self) -> List[str]:
        return [d.id for d in self.documents]


class BatchDeliveryCoordinator:
    """Serves the first batch of a query and every batch after it.

    Parameters
    - lexical_provider / vector_provider: Mandatory search providers
    - embedding_provider: Turns the query text into a vector
    - codec: Continuation token codec
    - config: ``RankingConfig``
    - governor / ai_service / prompt_config: Query understanding; without an
      AI service the local fallbacks are used
    - discovery: Optional ``DiscoveryExpansionEngine`` for complex queries
    - metrics: Optional ``RankingMetrics``
    """

    def __init__(
        self,
        lexical_provider: LexicalSearchProvider,
        vector_provider: VectorSearchProvider,
        embedding_provider: EmbeddingProvider,
        codec: PaginationTokenCodec,
        config: Optional[RankingConfig] = None,
        governor: Optional[AIResilienceGovernor] = None,
        ai_service: Optional[AITextService] = None,
        prompt_config: Optional[PromptConfig] = None,
        discovery: Optional[DiscoveryExpansionEngine] = None,
        metrics: Optional[RankingMetrics] = None,
    ):
        self.config = config or RankingConfig()
        self.lexical_provider = lexical_provider
        self.vector_provider = vector_provider
        self.embedding_provider = embedding_provider
        self.codec = codec
        self.governor = governor or AIResilienceGovernor(self.config, metrics=metrics)
        self.analyzer = QueryAnalyzer(self.governor, ai_service, self.config, prompt_config)
        self.fusion = ScoreFusionEngine(self.config)
        self.tiering = RelevanceTieringPolicy(self.config)
        self.discovery = discovery
        self.metrics = metrics

    async def search(self, query: str, batch_size: Optional[int] = None) -> BatchResponse:
        """Serve the first batch of a new query."""
        query = self._validate_query(query)
        batch_size = self._validate_batch_size(batch_size)
        analysis = await self.analyzer.analyze(query)
        return await self._deliver(analysis, frozenset(), 1, batch_size)

    async def next_batch(self, token: str, batch_size: Optional[int] = None) -> BatchResponse:
        """Serve the batch a continuation token points at.

        Raises ``TokenExpiredError`` or ``TokenMalformedError`` for unusable
        tokens. Retrying with the same token is safe.
        """
        batch_size = self._validate_batch_size(batch_size)
        continuation = self.codec.decode(token)
        try:
            analysis = QueryAnalysis.from_dict(continuation.query_text, continuation.normalized_filters)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Continuation token carries unusable filters", error=str(e))
            raise TokenMalformedError(f"Continuation token carries unusable filters: {e}") from e
        return await self._deliver(
            analysis, continuation.delivered_ids, continuation.batch_number, batch_size
        )

    async def rank(self, analysis: QueryAnalysis) -> List[FusedResult]:
        """Fresh search, fusion and tiering for an analyzed query."""
        lexical, vector = await self._search_sources(analysis)
        fused = self.fusion.fuse(lexical, vector, analysis.translated_query, analysis.cleaned_query)
        return self.tiering.apply(fused, analysis.is_simple, analysis.soft_categories)

    async def _deliver(
        self,
        analysis: QueryAnalysis,
        delivered_ids: frozenset,
        batch_number: int,
        batch_size: int,
    ) -> BatchResponse:
        start_time = time.perf_counter()
        bind_request_context(batch_number=batch_number, query_class=analysis.query_class)
        try:
            ranked = await self.rank(analysis)
            pool = await self._candidate_pool(analysis, ranked, batch_number)

            remaining = [d for d in pool if d.id not in delivered_ids]
            if not analysis.is_simple:
                remaining = await self.analyzer.rerank(analysis, remaining)

            batch = remaining[:batch_size]
            has_more = len(remaining) >= batch_size
            next_token = None
            if has_more:
                issued = self.codec.issue(
                    analysis.query,
                    analysis.to_dict(),
                    delivered_ids.union(d.id for d in batch),
                    batch_number + 1,
                )
                next_token = self.codec.encode(issued)

            duration = time.perf_counter() - start_time
            if self.metrics is not None:
                self.metrics.record_batch(analysis.query_class, has_more, duration)

            logger.info(
                "Batch delivered",
                query=analysis.query[:50],
                candidates=len(pool),
                already_delivered=len(delivered_ids),
                remaining=len(remaining),
                returned=len(batch),
                has_more=has_more,
                duration_ms=round(duration * 1000, 2),
            )

            return BatchResponse(
                documents=batch,
                has_more=has_more,
                next_token=next_token,
                batch_number=batch_number,
                query_class=analysis.query_class,
            )
        finally:
            clear_request_context("batch_number", "query_class")

    async def _candidate_pool(
        self,
        analysis: QueryAnalysis,
        ranked: Sequence[FusedResult],
        batch_number: int,
    ) -> List[RankedDocument]:
        plain = [RankedDocument(document=r.document, score=r.score) for r in ranked]
        if (
            self.discovery is None
            or not self.config.discovery_enabled
            or analysis.is_simple
            or batch_number < 2
        ):
            return plain

        expansion = await self.discovery.expand(ranked, analysis.filters.hard)
        if expansion is None:
            return plain

        pool = [RankedDocument(document=r.document, score=r.score) for r in expansion.primary]
        pool.extend(
            RankedDocument(
                document=c.document,
                score=c.score,
                source="discovery",
                discovery_boost=c.boost,
            )
            for c in expansion.related
        )
        pool.extend(RankedDocument(document=r.document, score=r.score) for r in expansion.remainder)

        seen = set()
        unique = []
        for doc in pool:
            if doc.id not in seen:
                seen.add(doc.id)
                unique.append(doc)
        return unique

    async def _search_sources(
        self,
        analysis: QueryAnalysis,
    ) -> Tuple[List[DocumentSummary], List[DocumentSummary]]:
        """Run lexical and vector search concurrently."""
        cfg = self.config
        hard = analysis.filters.hard

        lexical_task = self.lexical_provider.search(
            analysis.search_text, cfg.fuzzy_edit_bound, hard, cfg.lexical_limit
        )
        vector_task = self._vector_search(analysis)

        lexical, vector = await asyncio.gather(lexical_task, vector_task, return_exceptions=True)

        failures = {}
        for source, outcome in (("lexical", lexical), ("vector", vector)):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failures[source] = outcome
                logger.error("Search branch failed", source=source, error=str(outcome))

        if failures:
            both_failed = len(failures) == 2
            if both_failed or not cfg.degrade_on_branch_failure:
                source, error = next(iter(failures.items()))
                if isinstance(error, UpstreamSearchError):
                    raise error
                raise UpstreamSearchError(f"{source} search failed: {error}", source=source) from error
            logger.warning("Fusing against surviving search branch", failed=list(failures))
            if "lexical" in failures:
                lexical = []
            else:
                vector = []

        return self._enforce_filters(lexical, analysis), self._enforce_filters(vector, analysis)

    async def _vector_search(self, analysis: QueryAnalysis) -> List[DocumentSummary]:
        cfg = self.config
        embedding = await self.embedding_provider.embed(analysis.translated_query)
        pool_size = max(cfg.vector_min_candidates, cfg.vector_limit * cfg.vector_candidate_multiplier)
        return await self.vector_provider.search(embedding, pool_size, analysis.filters.hard, cfg.vector_limit)

    def _enforce_filters(self, documents: Sequence[DocumentSummary], analysis: QueryAnalysis) -> List[DocumentSummary]:
        hard = analysis.filters.hard
        kept = [doc for doc in documents if hard.matches(doc)]
        if len(kept) != len(documents):
            logger.warning(
                "Provider returned documents violating hard filters",
                dropped=len(documents) - len(kept),
            )
        return kept

    def _validate_query(self, query: Any) -> str:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        query = query.strip()
        if len(query) > self.config.max_query_length:
            raise ValidationError(
                f"Query exceeds {self.config.max_query_length} characters"
            )
        return query

    def _validate_batch_size(self, batch_size: Optional[int]) -> int:
        if batch_size is None:
            return self.config.default_batch_size
        if isinstance(batch_size, bool) or not isinstance(batch_size, int):
            raise ValidationError("Batch size must be an integer")
        if not 1 <= batch_size <= self.config.max_batch_size:
            raise ValidationError(
                f"Batch size must be between 1 and {self.config.max_batch_size}"
            )
        return batch_size
