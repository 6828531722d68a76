"""Shared fixtures for the ranking core tests."""

import pytest
from prometheus_client import CollectorRegistry

from shopsearch.common.config import RankingConfig
from shopsearch.common.errors import AIUnavailableError
from shopsearch.common.metrics import RankingMetrics
from shopsearch.pagination.token_codec import PaginationTokenCodec
from tests.fakes import TEST_SECRET, FakeClock, ScriptedAIService


@pytest.fixture
def config() -> RankingConfig:
    return RankingConfig(token_secret=TEST_SECRET)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> RankingMetrics:
    return RankingMetrics("test-service", registry=CollectorRegistry())


@pytest.fixture
def codec(config, clock, metrics) -> PaginationTokenCodec:
    return PaginationTokenCodec.from_config(config, clock=clock, metrics=metrics)


@pytest.fixture
def failing_ai() -> ScriptedAIService:
    error = AIUnavailableError("model unavailable")
    return ScriptedAIService(translation=error, is_simple=error, filters=error, rerank_order=error)
