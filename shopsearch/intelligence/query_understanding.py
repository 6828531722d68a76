"""Query understanding: translation, complexity, filters and reranking.

The AI text service is an external collaborator. Every call to it goes
through the ``AIResilienceGovernor`` so a failing model degrades to the
local fallbacks instead of failing the search.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

import structlog

from ..adapters import fallbacks
from ..adapters.governor import (
    CLASSIFY_COMPLEXITY,
    EXTRACT_FILTERS,
    RERANK,
    TRANSLATE,
    AIResilienceGovernor,
)
from ..catalog.base import DocumentSummary
from ..catalog.filters import FilterSet, PromptConfig, normalize_extracted_filters
from ..common.config import RankingConfig
from ..common.errors import AIUnavailableError
from ..ranking.fusion import clean_query_text

logger = structlog.get_logger("query_understanding")

R = TypeVar("R")


class AITextService(ABC):
    """Contract for the AI model calls used while understanding a query.

    Implementations raise ``AIUnavailableError`` (or any exception) on
    failure; the governor absorbs it.
    """

    @abstractmethod
    async def translate(self, query: str, context: str) -> str:
        pass

    @abstractmethod
    async def classify_complexity(self, query: str) -> bool:
        """True when the query is simple (short, single concept)."""
        pass

    @abstractmethod
    async def extract_filters(
        self,
        query: str,
        prompt_config: PromptConfig
    ) -> Union[FilterSet, Mapping[str, Any]]:
        """Return a ``FilterSet`` or the raw extraction dict."""
        pass

    @abstractmethod
    async def rerank(
        self,
        candidates: Sequence[DocumentSummary],
        query: str,
        context: str
    ) -> List[str]:
        """Return candidate ids in the preferred order."""
        pass


@dataclass(frozen=True)
class QueryAnalysis:
    """Everything later batches need to repeat the search without the AI."""
    query: str
    translated_query: str
    is_simple: bool
    filters: FilterSet = field(default_factory=FilterSet)
    cleaned_query: str = ""
    soft_categories: Tuple[str, ...] = ()

    @property
    def query_class(self) -> str:
        return "simple" if self.is_simple else "complex"

    @property
    def search_text(self) -> str:
        """Text sent to the lexical provider."""
        return self.cleaned_query or self.translated_query

    def to_dict(self) -> Dict[str, Any]:
        return {
            "t": self.translated_query,
            "s": self.is_simple,
            "f": self.filters.to_dict(),
            "c": self.cleaned_query,
            "sc": list(self.soft_categories),
        }

    @classmethod
    def from_dict(cls, query: str, data: Mapping[str, Any]) -> "QueryAnalysis":
        is_simple = data["s"]
        translated = data["t"]
        cleaned = data.get("c", "")
        soft = data.get("sc") or []
        if not isinstance(is_simple, bool) or not isinstance(translated, str) or not isinstance(cleaned, str):
            raise ValueError("Malformed query analysis")
        if not isinstance(soft, list) or not all(isinstance(s, str) for s in soft):
            raise ValueError("Malformed soft categories")
        return cls(
            query=query,
            translated_query=translated,
            is_simple=is_simple,
            filters=FilterSet.from_dict(data.get("f") or {}),
            cleaned_query=cleaned,
            soft_categories=tuple(soft),
        )


class QueryAnalyzer:
    """Runs the governed AI steps for a new query.

    Without an AI service every step uses its fallback directly.
    """

    def __init__(
        self,
        governor: AIResilienceGovernor,
        ai_service: Optional[AITextService] = None,
        config: Optional[RankingConfig] = None,
        prompt_config: Optional[PromptConfig] = None,
    ):
        self.governor = governor
        self.ai_service = ai_service
        self.config = config or governor.config
        self.prompt_config = prompt_config or PromptConfig()

    async def analyze(self, query: str) -> QueryAnalysis:
        query = query.strip()
        llm_query = fallbacks.sanitize_query_for_llm(query, self.config.llm_query_max_chars)

        translated = await self._governed(
            TRANSLATE,
            lambda: self._translate(llm_query),
            lambda: fallbacks.identity_translation(query),
        )

        is_simple, filters = await asyncio.gather(
            self._governed(
                CLASSIFY_COMPLEXITY,
                lambda: self._classify(translated),
                lambda: fallbacks.classify_by_word_count(translated, self.config.simple_query_max_words),
            ),
            self._governed(
                EXTRACT_FILTERS,
                lambda: self._extract(translated),
                lambda: fallbacks.extract_price_filters(translated),
            ),
        )

        cleaned = clean_query_text(translated, filters.hard.category + filters.hard.type)

        soft_categories = filters.soft_categories
        if not is_simple and filters.is_empty():
            # complex query with nothing extracted: the query itself is the hint
            soft_categories = (translated,)

        analysis = QueryAnalysis(
            query=query,
            translated_query=translated,
            is_simple=is_simple,
            filters=filters,
            cleaned_query=cleaned,
            soft_categories=soft_categories,
        )

        logger.info(
            "Query analyzed",
            query=query[:50],
            query_class=analysis.query_class,
            hard_filters=filters.hard.to_dict(),
            soft_categories=list(soft_categories),
            cleaned_query=cleaned,
        )
        return analysis

    async def rerank(self, analysis: QueryAnalysis, results: Sequence[R]) -> List[R]:
        """Rerank the leading window of ``results`` (items with ``id`` and ``document``).

        Only the first ``rerank_window`` results are sent. Ids the reranker
        invents are ignored; window members it omits keep fusion order after
        the reranked ones; results past the window are untouched.
        """
        window = list(results[:self.config.rerank_window])
        rest = list(results[self.config.rerank_window:])
        if len(window) < 2:
            return list(results)

        window_ids = [r.id for r in window]
        ordered_ids = await self._governed(
            RERANK,
            lambda: self._rerank([r.document for r in window], analysis),
            lambda: fallbacks.keep_fusion_order(window_ids),
        )

        by_id = {r.id: r for r in window}
        reordered = []
        seen = set()
        for doc_id in ordered_ids:
            if doc_id in by_id and doc_id not in seen:
                reordered.append(by_id[doc_id])
                seen.add(doc_id)
        reordered.extend(r for r in window if r.id not in seen)
        return reordered + rest

    async def _governed(self, capability, operation, fallback):
        if self.ai_service is None:
            return fallback()
        return await self.governor.execute(capability, operation, fallback)

    async def _translate(self, query: str) -> str:
        translated = await self.ai_service.translate(query, self.prompt_config.context)
        if not isinstance(translated, str) or not translated.strip():
            raise AIUnavailableError("Translation returned no text")
        return translated.strip()

    async def _classify(self, query: str) -> bool:
        result = await self.ai_service.classify_complexity(query)
        if not isinstance(result, bool):
            raise AIUnavailableError(f"Classification returned {result!r}")
        return result

    async def _extract(self, query: str) -> FilterSet:
        raw = await self.ai_service.extract_filters(query, self.prompt_config)
        if isinstance(raw, FilterSet):
            return raw
        if not isinstance(raw, Mapping):
            raise AIUnavailableError(f"Filter extraction returned {type(raw).__name__}")
        try:
            return normalize_extracted_filters(raw, self.prompt_config, query)
        except ValueError as e:
            raise AIUnavailableError(f"Filter extraction returned unusable filters: {e}") from e

    async def _rerank(self, documents: List[DocumentSummary], analysis: QueryAnalysis) -> List[str]:
        ordered = await self.ai_service.rerank(documents, analysis.translated_query, self.prompt_config.context)
        if not isinstance(ordered, (list, tuple)):
            raise AIUnavailableError(f"Rerank returned {type(ordered).__name__}")
        return [str(doc_id) for doc_id in ordered]
