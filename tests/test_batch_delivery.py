"""Tests for stateless batch delivery over hybrid search."""

import pytest

from shopsearch.adapters.governor import RERANK, AIResilienceGovernor
from shopsearch.catalog.filters import HardFilters
from shopsearch.catalog.memory import InMemoryCatalog
from shopsearch.common.config import RankingConfig
from shopsearch.common.errors import (
    TokenExpiredError,
    TokenMalformedError,
    UpstreamSearchError,
    ValidationError,
)
from shopsearch.discovery.expansion import DiscoveryExpansionEngine
from shopsearch.hybrid.batch_delivery import BatchDeliveryCoordinator
from shopsearch.ranking.tiering import TierLabel
from tests.fakes import (
    TEST_SECRET,
    FakeEmbeddingProvider,
    ScriptedAIService,
    ScriptedLexicalProvider,
    ScriptedVectorProvider,
    make_doc,
)


def coordinator(codec, lexical, vector=None, config=None, embedding=None, **kwargs):
    return BatchDeliveryCoordinator(
        lexical_provider=lexical,
        vector_provider=vector or ScriptedVectorProvider(),
        embedding_provider=embedding or FakeEmbeddingProvider(),
        codec=codec,
        config=config or RankingConfig(token_secret=TEST_SECRET),
        **kwargs,
    )


def wines(count, prefix="wine"):
    return [make_doc(f"{prefix}-{i}", f"{prefix} {i}") for i in range(count)]


async def drain(service, query, batch_size, max_batches=50):
    """Follow a result chain to the end, returning every response."""
    responses = [await service.search(query, batch_size=batch_size)]
    for _ in range(max_batches):
        if not responses[-1].has_more:
            break
        responses.append(await service.next_batch(responses[-1].next_token, batch_size=batch_size))
    return responses


@pytest.mark.asyncio
async def test_second_batch_returns_only_new_documents(codec):
    """Test 42 candidates with 20 delivered yields 20 new results and more to come."""
    config = RankingConfig(token_secret=TEST_SECRET, lexical_limit=50)
    service = coordinator(codec, ScriptedLexicalProvider(wines(42)), config=config)

    first = await service.search("wine")
    assert len(first.documents) == 20
    assert first.has_more is True
    assert first.batch_number == 1

    second = await service.next_batch(first.next_token)
    assert len(second.documents) == 20
    assert second.has_more is True
    assert second.batch_number == 2
    assert not set(first.ids) & set(second.ids)

    third = await service.next_batch(second.next_token)
    assert len(third.ids) == 2
    assert third.has_more is False
    assert third.next_token is None
    assert len(set(first.ids + second.ids + third.ids)) == 42


@pytest.mark.asyncio
async def test_chain_never_repeats_documents(codec):
    """Test a full chain over a live catalog delivers each document once."""
    catalog = InMemoryCatalog(
        make_doc(f"rw-{i}", f"red wine {i}", embedding=(i / 60, 1.0, 0.0)) for i in range(60)
    )
    service = coordinator(codec, catalog.lexical, catalog.vector)

    responses = await drain(service, "red wine", batch_size=7)
    delivered = [doc_id for r in responses for doc_id in r.ids]

    assert len(delivered) == len(set(delivered))
    assert set(delivered) == {f"rw-{i}" for i in range(60)}
    assert responses[-1].has_more is False
    assert [r.batch_number for r in responses] == list(range(1, len(responses) + 1))


@pytest.mark.asyncio
async def test_shrinking_catalog_between_batches(codec):
    """Test removed products disappear and nothing repeats when the pool shrinks."""
    catalog = InMemoryCatalog(wines(30))
    service = coordinator(codec, catalog.lexical, catalog.vector)

    first = await service.search("wine", batch_size=10)
    undelivered = [f"wine-{i}" for i in range(30) if f"wine-{i}" not in first.ids]
    removed = undelivered[:5] + first.ids[:2]
    for doc_id in removed:
        catalog.remove(doc_id)

    second = await service.next_batch(first.next_token, batch_size=10)
    assert not set(second.ids) & set(removed)
    assert not set(second.ids) & set(first.ids)
    assert len(second.ids) == 10

    third = await service.next_batch(second.next_token, batch_size=10)
    assert len(third.ids) == 5
    assert third.has_more is False


@pytest.mark.asyncio
async def test_exact_page_leaves_empty_final_batch(codec):
    """Test a pool ending exactly on a batch boundary needs one empty follow-up."""
    service = coordinator(codec, ScriptedLexicalProvider(wines(10)))
    first = await service.search("wine", batch_size=10)
    assert first.has_more is True

    last = await service.next_batch(first.next_token, batch_size=10)
    assert last.documents == []
    assert last.has_more is False


@pytest.mark.asyncio
async def test_simple_query_tiers_results(codec):
    """Test simple-query results carry tier labels with HighConfidence first."""
    lexical = ScriptedLexicalProvider([make_doc("other", "Sparkling Rose"), make_doc("merlot", "Merlot")])
    response = await coordinator(codec, lexical).search("merlot")

    assert response.query_class == "simple"
    assert response.ids == ["merlot", "other"]
    assert response.documents[0].score.tier is TierLabel.HIGH_CONFIDENCE
    assert response.documents[0].to_dict()["match_type"] == "exact"


@pytest.mark.asyncio
async def test_name_match_outranks_vector_only_result(codec):
    """Test a bonus-carrying lexical hit leads a vector-only HighConfidence result."""
    lexical = ScriptedLexicalProvider([make_doc("named", "Merlot Red Reserve")])
    vector = ScriptedVectorProvider([make_doc("semantic", "Cabernet Sauvignon")])
    response = await coordinator(codec, lexical, vector).search("red merlot")

    assert response.query_class == "simple"
    assert response.ids == ["named", "semantic"]
    named, semantic = response.documents
    assert named.score.exact_match_bonus == 20000.0
    assert named.score.tier is TierLabel.RELATED
    assert semantic.score.exact_match_bonus == 0.0
    assert semantic.score.tier is TierLabel.HIGH_CONFIDENCE


@pytest.mark.asyncio
async def test_ai_runs_once_per_chain(codec):
    """Test later batches reuse the token's analysis instead of calling the AI."""
    ai = ScriptedAIService(translation="red wine", is_simple=True)
    lexical = ScriptedLexicalProvider(wines(30, prefix="red wine"))
    service = coordinator(codec, lexical, ai_service=ai)

    first = await service.search("vino tinto", batch_size=10)
    await service.next_batch(first.next_token, batch_size=10)

    assert ai.calls == {"translate": 1, "classify": 1, "extract": 1, "rerank": 0}
    assert [call["text"] for call in lexical.calls] == ["red wine", "red wine"]
    assert codec.decode(first.next_token).query_text == "vino tinto"


@pytest.mark.asyncio
async def test_complex_query_is_reranked(codec):
    """Test complex queries pass the leading window through the reranker."""
    ai = ScriptedAIService(is_simple=False, rerank_order=lambda ids: list(reversed(ids)))
    service = coordinator(codec, ScriptedLexicalProvider(wines(5)), ai_service=ai)

    response = await service.search("light wine for a summer evening", batch_size=5)

    assert response.query_class == "complex"
    assert response.ids == ["wine-4", "wine-3", "wine-2", "wine-1", "wine-0"]
    assert ai.rerank_inputs == [["wine-0", "wine-1", "wine-2", "wine-3", "wine-4"]]
    assert all(d.score.tier is None for d in response.documents)


@pytest.mark.asyncio
async def test_rerank_failure_keeps_fusion_order(codec, config, failing_ai):
    """Test an unavailable AI still serves results in fusion order."""
    governor = AIResilienceGovernor(config)
    service = coordinator(codec, ScriptedLexicalProvider(wines(5)), governor=governor, ai_service=failing_ai)

    response = await service.search("cheap wine for a summer party", batch_size=5)

    assert response.query_class == "complex"
    assert response.ids == [f"wine-{i}" for i in range(5)]
    assert governor.status()[RERANK]["failure_count"] == 1


@pytest.mark.asyncio
async def test_hard_filters_are_enforced(codec):
    """Test documents violating hard filters are dropped even if a provider returns them."""
    lexical = ScriptedLexicalProvider([
        make_doc("cheap", "wine cheap", price=40.0),
        make_doc("pricey", "wine pricey", price=80.0),
    ])
    vector = ScriptedVectorProvider([make_doc("gone", "wine gone", price=20.0, stock_status="outofstock")])
    response = await coordinator(codec, lexical, vector).search("wine under 50")

    assert response.ids == ["cheap"]
    assert lexical.calls[0]["hard_filters"] == HardFilters(max_price=50.0)
    assert vector.calls[0]["hard_filters"] == HardFilters(max_price=50.0)


@pytest.mark.asyncio
async def test_vector_pool_size(codec):
    """Test the vector branch asks for a wide candidate pool."""
    vector = ScriptedVectorProvider()
    embedding = FakeEmbeddingProvider()
    await coordinator(codec, ScriptedLexicalProvider(), vector, embedding=embedding).search("wine")

    assert embedding.calls == ["wine"]
    assert vector.calls[0]["candidate_pool_size"] == 350
    assert vector.calls[0]["limit"] == 35


@pytest.mark.asyncio
async def test_branch_failure_raises(codec):
    """Test a failing search branch fails the batch by default."""
    service = coordinator(
        codec,
        ScriptedLexicalProvider(error=RuntimeError("connection reset")),
        ScriptedVectorProvider(wines(3)),
    )
    with pytest.raises(UpstreamSearchError) as exc_info:
        await service.search("wine")
    assert exc_info.value.source == "lexical"


@pytest.mark.asyncio
async def test_embedding_failure_raises(codec):
    """Test embedding errors surface as upstream errors."""
    class BrokenEmbedding(FakeEmbeddingProvider):
        async def embed(self, text):
            raise UpstreamSearchError("embedding service unreachable", source="embedding")

    service = coordinator(codec, ScriptedLexicalProvider(wines(3)), embedding=BrokenEmbedding())
    with pytest.raises(UpstreamSearchError) as exc_info:
        await service.search("wine")
    assert exc_info.value.source == "embedding"


@pytest.mark.asyncio
async def test_degraded_mode_uses_surviving_branch(codec):
    """Test opting into degraded mode fuses the surviving branch alone."""
    config = RankingConfig(token_secret=TEST_SECRET, degrade_on_branch_failure=True)
    service = coordinator(
        codec,
        ScriptedLexicalProvider(error=RuntimeError("connection reset")),
        ScriptedVectorProvider(wines(3)),
        config=config,
    )
    response = await service.search("wine")
    assert response.ids == ["wine-0", "wine-1", "wine-2"]


@pytest.mark.asyncio
async def test_degraded_mode_still_fails_when_both_branches_fail(codec):
    """Test degraded mode needs at least one surviving branch."""
    config = RankingConfig(token_secret=TEST_SECRET, degrade_on_branch_failure=True)
    service = coordinator(
        codec,
        ScriptedLexicalProvider(error=RuntimeError("down")),
        ScriptedVectorProvider(error=RuntimeError("down")),
        config=config,
    )
    with pytest.raises(UpstreamSearchError):
        await service.search("wine")


@pytest.mark.asyncio
async def test_expired_token(codec, clock):
    """Test an expired token asks the caller to start over."""
    service = coordinator(codec, ScriptedLexicalProvider(wines(30)))
    first = await service.search("wine", batch_size=10)
    clock.advance(1801)
    with pytest.raises(TokenExpiredError):
        await service.next_batch(first.next_token)


@pytest.mark.asyncio
async def test_malformed_tokens(codec):
    """Test garbage tokens and tokens without a usable analysis are rejected."""
    service = coordinator(codec, ScriptedLexicalProvider(wines(30)))
    with pytest.raises(TokenMalformedError):
        await service.next_batch("garbage")

    raw = codec.encode(codec.issue("wine", {"t": 5}, [], batch_number=2))
    with pytest.raises(TokenMalformedError):
        await service.next_batch(raw)


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "   ", None, "x" * 257])
async def test_invalid_query(codec, query):
    """Test queries must be non-empty and bounded."""
    with pytest.raises(ValidationError):
        await coordinator(codec, ScriptedLexicalProvider()).search(query)


@pytest.mark.asyncio
@pytest.mark.parametrize("batch_size", [0, 101, True, "5", 2.5])
async def test_invalid_batch_size(codec, batch_size):
    """Test batch sizes must be integers within bounds."""
    service = coordinator(codec, ScriptedLexicalProvider())
    with pytest.raises(ValidationError):
        await service.search("wine", batch_size=batch_size)


@pytest.mark.asyncio
async def test_discovery_expands_later_batches(codec, config):
    """Test complex queries mix in neighbours of strong name matches from batch two on."""
    seed = make_doc("seed", "red wine for party gift box", embedding=(0.0, 1.0, 0.0))
    neighbour = make_doc("neighbour", "Festive Malbec", embedding=(0.1, 0.9, 0.0))
    lexical = ScriptedLexicalProvider([seed] + wines(4))
    vector = ScriptedVectorProvider(by_embedding={(0.0, 1.0, 0.0): [seed, neighbour]})
    service = coordinator(
        codec,
        lexical,
        vector,
        discovery=DiscoveryExpansionEngine(vector, config),
    )

    first = await service.search("red wine for party", batch_size=2)
    assert first.ids == ["seed", "wine-0"]
    assert all(d.source == "fusion" for d in first.documents)

    second = await service.next_batch(first.next_token, batch_size=2)
    assert second.ids == ["neighbour", "wine-1"]
    assert second.documents[0].source == "discovery"
    assert second.documents[0].discovery_boost == 2500.0
    assert second.documents[0].to_dict()["discovery_boost"] == 2500.0


@pytest.mark.asyncio
async def test_batches_are_counted(codec, metrics):
    """Test served batches are exported as metrics."""
    service = coordinator(codec, ScriptedLexicalProvider(wines(3)), metrics=metrics)
    await service.search("wine", batch_size=2)
    assert 'shopsearch_batches_served_total{query_class="simple",has_more="true"} 1.0' in metrics.get_metrics()
