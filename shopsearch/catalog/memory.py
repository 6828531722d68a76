"""In-memory catalog implementing both search provider contracts.

Intended for local development, demos and tests. Lexical search is a
token-level fuzzy match on product names; vector search is brute-force
cosine similarity with numpy over the precomputed product embeddings.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import structlog

from ..ranking.similarity import levenshtein_distance, normalize_text, tokenize
from .base import DocumentSummary, LexicalSearchProvider, VectorSearchProvider
from .filters import HardFilters

logger = structlog.get_logger("catalog.memory")


class InMemoryCatalog:
    """Product catalog held in process memory.

    ``lexical`` and ``vector`` expose the two provider contracts over the
    same documents, so removing a product affects both at once.
    """

    def __init__(self, documents: Iterable[DocumentSummary] = ()):
        self._documents: Dict[str, DocumentSummary] = {}
        for doc in documents:
            self.add(doc)
        self.lexical = _LexicalView(self)
        self.vector = _VectorView(self)

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> "InMemoryCatalog":
        return cls(DocumentSummary.from_record(r) for r in records)

    def add(self, document: DocumentSummary) -> None:
        self._documents[document.id] = document

    def remove(self, document_id: str) -> None:
        self._documents.pop(document_id, None)

    def get(self, document_id: str) -> Optional[DocumentSummary]:
        return self._documents.get(document_id)

    def __len__(self) -> int:
        return len(self._documents)

    async def search_text(
        self,
        text: str,
        fuzzy_edit_bound: int,
        hard_filters: HardFilters,
        limit: int
    ) -> List[DocumentSummary]:
        """Rank names by how many query tokens they contain or nearly contain."""
        await asyncio.sleep(0)
        query_tokens = tokenize(text)
        if not query_tokens:
            return []

        scored = []
        for position, doc in enumerate(self._documents.values()):
            if not hard_filters.matches(doc):
                continue
            score = self._lexical_score(doc.name, query_tokens, fuzzy_edit_bound)
            if score > 0:
                scored.append((score, position, doc))

        scored.sort(key=lambda item: (-item[0], item[1]))
        logger.debug("Lexical search", text=text, matched=len(scored), limit=limit)
        return [doc for _, _, doc in scored[:limit]]

    async def search_vector(
        self,
        embedding: Sequence[float],
        candidate_pool_size: int,
        hard_filters: HardFilters,
        limit: int
    ) -> List[DocumentSummary]:
        """Cosine similarity over the ``candidate_pool_size`` nearest, then filters."""
        await asyncio.sleep(0)
        candidates = [doc for doc in self._documents.values() if doc.embedding is not None]
        if not candidates:
            return []

        query_vec = np.asarray(embedding, dtype=float)
        query_norm = np.linalg.norm(query_vec)
        if query_norm == 0:
            return []

        matrix = np.asarray([doc.embedding for doc in candidates], dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        similarities = matrix.dot(query_vec) / (norms * query_norm)

        # stable sort keeps catalog order between equal similarities
        ranked = np.argsort(-similarities, kind="stable")[:candidate_pool_size]
        results = []
        for index in ranked:
            doc = candidates[int(index)]
            if hard_filters.matches(doc):
                results.append(doc)
                if len(results) >= limit:
                    break
        logger.debug("Vector search", pool=len(ranked), returned=len(results), limit=limit)
        return results

    @staticmethod
    def _lexical_score(name: str, query_tokens: List[str], edit_bound: int) -> float:
        name_norm = normalize_text(name)
        name_tokens = name_norm.split(" ") if name_norm else []
        score = 0.0
        for token in query_tokens:
            if token in name_tokens:
                score += 2.0
            elif token in name_norm:
                score += 1.5
            elif any(levenshtein_distance(token, word) <= edit_bound
                     for word in name_tokens if len(word) >= 3 and len(token) >= 3):
                score += 1.0
        return score


class _LexicalView(LexicalSearchProvider):
    def __init__(self, catalog: InMemoryCatalog):
        self._catalog = catalog

    async def search(self, text, fuzzy_edit_bound, hard_filters, limit):
        return await self._catalog.search_text(text, fuzzy_edit_bound, hard_filters, limit)


class _VectorView(VectorSearchProvider):
    def __init__(self, catalog: InMemoryCatalog):
        self._catalog = catalog

    async def search(self, embedding, candidate_pool_size, hard_filters, limit):
        return await self._catalog.search_vector(embedding, candidate_pool_size, hard_filters, limit)
