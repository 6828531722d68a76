"""Catalog document view and search provider contracts.

Defines the abstract contract the ranking core depends on, independent of
the engine that executes lexical and nearest-neighbour search.

All search methods are asynchronous. A provider returns documents in rank
order; the list position is the rank.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .filters import HardFilters


@dataclass(frozen=True)
class DocumentSummary:
    """Read-only view of a catalog product.

    ``category`` and ``type`` are lists because products may sit in several
    categories. ``embedding`` is the precomputed product vector, when the
    provider returns it.
    """
    id: str
    name: str
    category: Tuple[str, ...] = ()
    type: Tuple[str, ...] = ()
    price: Optional[float] = None
    soft_categories: Tuple[str, ...] = ()
    embedding: Optional[Tuple[float, ...]] = None
    stock_status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "DocumentSummary":
        """Build a summary from a catalog record (dict as stored by the catalog)."""
        known = {"id", "_id", "name", "category", "type", "price", "softCategory",
                 "soft_categories", "embedding", "stockStatus", "stock_status"}
        doc_id = record.get("id", record.get("_id"))
        if doc_id is None:
            raise ValueError("Catalog record has no id")
        embedding = record.get("embedding")
        price = record.get("price")
        return cls(
            id=str(doc_id),
            name=str(record.get("name") or ""),
            category=_as_tuple(record.get("category")),
            type=_as_tuple(record.get("type")),
            price=float(price) if price is not None else None,
            soft_categories=_as_tuple(record.get("soft_categories", record.get("softCategory"))),
            embedding=tuple(float(v) for v in embedding) if embedding is not None else None,
            stock_status=record.get("stock_status", record.get("stockStatus")),
            metadata={k: v for k, v in record.items() if k not in known},
        )


def _as_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        return tuple(str(v) for v in value)
    return (str(value),)


class LexicalSearchProvider(ABC):
    """Fuzzy full-text search over product names."""

    @abstractmethod
    async def search(
        self,
        text: str,
        fuzzy_edit_bound: int,
        hard_filters: HardFilters,
        limit: int
    ) -> List[DocumentSummary]:
        """Return up to ``limit`` documents satisfying ``hard_filters``, best first."""
        pass


class VectorSearchProvider(ABC):
    """Approximate nearest-neighbour search over product embeddings."""

    @abstractmethod
    async def search(
        self,
        embedding: Sequence[float],
        candidate_pool_size: int,
        hard_filters: HardFilters,
        limit: int
    ) -> List[DocumentSummary]:
        """Return up to ``limit`` documents satisfying ``hard_filters``, most similar first."""
        pass


class EmbeddingProvider(ABC):
    """Turns query text into a vector in the product embedding space."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        pass
