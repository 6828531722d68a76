"""Tests for the hard/soft filter model and catalog documents."""

import pytest

from shopsearch.catalog.base import DocumentSummary
from shopsearch.catalog.filters import (
    FilterSet,
    HardFilters,
    PromptConfig,
    count_soft_category_matches,
    normalize_extracted_filters,
    should_use_or_logic,
)
from tests.fakes import make_doc


def test_category_match_all_and_any():
    """Test AND and OR category semantics."""
    both = make_doc("1", category=["red wine", "french"])
    red_only = make_doc("2", category=["red wine"])

    all_filter = HardFilters(category=("red wine", "french"))
    assert all_filter.matches(both)
    assert not all_filter.matches(red_only)

    any_filter = HardFilters(category=("red wine", "white wine"), category_match="any")
    assert any_filter.matches(red_only)
    assert not any_filter.matches(make_doc("3", category=["beer"]))


def test_type_and_price_filters():
    """Test type intersection and price bounds."""
    doc = make_doc("1", type=["kosher", "dry"], price=100.0)
    assert HardFilters(type=("dry",)).matches(doc)
    assert not HardFilters(type=("sweet",)).matches(doc)
    assert HardFilters(min_price=50, max_price=100).matches(doc)
    assert not HardFilters(max_price=99.99).matches(doc)
    assert not HardFilters(min_price=10).matches(make_doc("2", price=None))


def test_exact_price_band():
    """Test an exact price matches within +/-15%."""
    filters = HardFilters(price=100.0)
    assert filters.price_bounds() == pytest.approx((85.0, 115.0))
    assert filters.matches(make_doc("1", price=85.0))
    assert filters.matches(make_doc("2", price=115.0))
    assert not filters.matches(make_doc("3", price=116.0))


def test_out_of_stock_never_matches():
    """Test stock status gates every filter, including empty ones."""
    assert HardFilters().matches(make_doc("1"))
    assert HardFilters().matches(make_doc("2", stock_status="instock"))
    assert not HardFilters().matches(make_doc("3", stock_status="outofstock"))


def test_filter_set_round_trip():
    """Test FilterSet serialization used by continuation tokens."""
    filters = FilterSet(
        hard=HardFilters(category=("red wine", "white wine"), category_match="any", max_price=120.0),
        soft_categories=("party",),
    )
    assert FilterSet.from_dict(filters.to_dict()) == filters
    assert FilterSet().is_empty()
    assert not filters.is_empty()


def test_filters_from_dict_rejects_bad_values():
    """Test untrusted filter dicts are validated."""
    with pytest.raises(ValueError):
        HardFilters.from_dict({"category_match": "some"})
    with pytest.raises(ValueError):
        HardFilters.from_dict({"price": "cheap"})
    with pytest.raises(ValueError):
        HardFilters.from_dict({"category": [1, 2]})
    with pytest.raises(ValueError):
        HardFilters.from_dict({"min_price": -5})


def test_normalize_extracted_filters():
    """Test camelCase keys, vocabulary checks and swapped price bounds."""
    prompt = PromptConfig(
        categories=("red wine", "white wine"),
        types=("dry",),
        soft_categories=("party", "gift"),
    )
    raw = {
        "category": ["red wine", "whisky"],
        "type": "dry",
        "minPrice": "200",
        "maxPrice": 100,
        "softCategory": ["gift", "unknown"],
    }
    filters = normalize_extracted_filters(raw, prompt, query="dry red wine gift")
    assert filters.hard.category == ("red wine",)
    assert filters.hard.type == ("dry",)
    assert filters.hard.min_price == 100.0
    assert filters.hard.max_price == 200.0
    assert filters.soft_categories == ("gift",)
    assert filters.hard.category_match == "all"


def test_normalize_drops_unparseable_prices():
    """Test bad prices from extraction are dropped rather than raised."""
    filters = normalize_extracted_filters({"price": "about a hundred", "maxPrice": -3})
    assert filters.hard.price is None
    assert filters.hard.max_price is None


def test_or_logic_indicators():
    """Test OR/AND voting for multiple categories."""
    assert should_use_or_logic("red or white wine for party", ["red wine", "white wine"])
    assert should_use_or_logic("mix of beers", ["lager", "ale"])
    assert not should_use_or_logic("french red", ["french", "red wine"])
    assert not should_use_or_logic("anything", ["only one"])


def test_red_and_white_pair_prefers_or():
    """Test a red+white category pair alone votes for OR."""
    assert should_use_or_logic("wine selection", ["red wine", "white wine"])


def test_soft_category_match_count():
    """Test substring containment in either direction, case-insensitive."""
    doc_softs = ["Party Wines", "BBQ"]
    assert count_soft_category_matches(doc_softs, ["party"]) == 1
    assert count_soft_category_matches(doc_softs, ["party", "bbq grill"]) == 2
    assert count_soft_category_matches(doc_softs, ["gift"]) == 0
    assert count_soft_category_matches([], ["party"]) == 0


def test_document_from_record():
    """Test building a document from a catalog record."""
    doc = DocumentSummary.from_record({
        "_id": 42,
        "name": "Malbec Reserve",
        "category": "red wine",
        "type": ["dry"],
        "price": "89.9",
        "softCategory": ["bbq"],
        "embedding": [0.1, 0.2],
        "stockStatus": "instock",
        "sku": "MB-1",
    })
    assert doc.id == "42"
    assert doc.category == ("red wine",)
    assert doc.price == pytest.approx(89.9)
    assert doc.soft_categories == ("bbq",)
    assert doc.embedding == (0.1, 0.2)
    assert doc.stock_status == "instock"
    assert doc.metadata == {"sku": "MB-1"}

    with pytest.raises(ValueError):
        DocumentSummary.from_record({"name": "no id"})
