"""Tests for the in-memory catalog providers."""

import pytest

from shopsearch.catalog.filters import HardFilters
from shopsearch.catalog.memory import InMemoryCatalog
from tests.fakes import make_doc


@pytest.fixture
def catalog():
    return InMemoryCatalog([
        make_doc("1", "Merlot Reserve", category=["red wine"], price=90.0, embedding=(1.0, 0.0)),
        make_doc("2", "Chardonnay", category=["white wine"], price=60.0, embedding=(0.0, 1.0)),
        make_doc("3", "Merlot", category=["red wine"], price=40.0, embedding=(0.9, 0.1)),
        make_doc("4", "Cabernet", category=["red wine"], embedding=(0.7, 0.7), stock_status="outofstock"),
    ])


@pytest.mark.asyncio
async def test_lexical_search(catalog):
    """Test token, substring and fuzzy matches on names."""
    results = await catalog.lexical.search("merlot", 2, HardFilters(), 10)
    assert [d.id for d in results] == ["1", "3"]

    results = await catalog.lexical.search("chardonay", 2, HardFilters(), 10)
    assert [d.id for d in results] == ["2"]

    assert await catalog.lexical.search("chardonay", 0, HardFilters(), 10) == []
    assert await catalog.lexical.search("   ", 2, HardFilters(), 10) == []


@pytest.mark.asyncio
async def test_lexical_search_applies_filters_and_limit(catalog):
    """Test hard filters and the result limit."""
    results = await catalog.lexical.search("merlot", 2, HardFilters(max_price=50.0), 10)
    assert [d.id for d in results] == ["3"]
    assert len(await catalog.lexical.search("merlot", 2, HardFilters(), 1)) == 1


@pytest.mark.asyncio
async def test_vector_search(catalog):
    """Test cosine ranking, filters and out-of-stock exclusion."""
    results = await catalog.vector.search([1.0, 0.0], 100, HardFilters(), 10)
    assert [d.id for d in results] == ["1", "3", "2"]

    results = await catalog.vector.search([1.0, 0.0], 100, HardFilters(category=("white wine",)), 10)
    assert [d.id for d in results] == ["2"]

    assert await catalog.vector.search([0.0, 0.0], 100, HardFilters(), 10) == []


@pytest.mark.asyncio
async def test_vector_candidate_pool_bounds_results(catalog):
    """Test filtering happens within the nearest candidate pool."""
    results = await catalog.vector.search([1.0, 0.0], 2, HardFilters(category=("white wine",)), 10)
    assert results == []


@pytest.mark.asyncio
async def test_remove_affects_both_views(catalog):
    """Test removed products leave both providers."""
    catalog.remove("1")
    assert len(catalog) == 3
    assert catalog.get("1") is None
    assert [d.id for d in await catalog.lexical.search("merlot", 2, HardFilters(), 10)] == ["3"]
    assert "1" not in [d.id for d in await catalog.vector.search([1.0, 0.0], 100, HardFilters(), 10)]


def test_from_records():
    """Test loading catalog records."""
    catalog = InMemoryCatalog.from_records([{"_id": 7, "name": "Rose", "price": 30}])
    assert catalog.get("7").name == "Rose"
