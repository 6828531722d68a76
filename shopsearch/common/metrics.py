"""Metrics collection for the ranking core.

Thin convenience wrapper around ``prometheus_client`` so the coordinator,
governor and discovery engine record metrics with consistent label sets.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Each collector owns its registry (inject one per test)
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class RankingMetrics:
    """Centralized metrics for batch delivery and AI resilience.

    Parameters
    - service_name: Logical name kept for log context
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.batches_served = Counter(
            'shopsearch_batches_served_total',
            'Result batches returned to callers',
            ['query_class', 'has_more'],
            registry=self.registry
        )

        self.batch_duration = Histogram(
            'shopsearch_batch_duration_seconds',
            'Time to build one result batch (search, fusion, tiering, slicing)',
            ['query_class'],
            registry=self.registry
        )

        self.ai_calls = Counter(
            'shopsearch_ai_calls_total',
            'AI capability invocations partitioned by outcome',
            ['capability', 'outcome'],
            registry=self.registry
        )

        self.breaker_open = Gauge(
            'shopsearch_breaker_open',
            'Whether the circuit breaker for a capability is open (1) or closed (0)',
            ['capability'],
            registry=self.registry
        )

        self.token_rejections = Counter(
            'shopsearch_token_rejections_total',
            'Continuation tokens rejected during decode',
            ['reason'],
            registry=self.registry
        )

        self.discovery_expansions = Counter(
            'shopsearch_discovery_expansions_total',
            'Discovery expansions executed',
            ['outcome'],
            registry=self.registry
        )

    def record_batch(self, query_class: str, has_more: bool, duration: float) -> None:
        """Record one served batch. ``duration`` is in seconds."""
        self.batches_served.labels(query_class=query_class, has_more=str(has_more).lower()).inc()
        self.batch_duration.labels(query_class=query_class).observe(duration)

    def record_ai_call(self, capability: str, outcome: str) -> None:
        """Record an AI call outcome: ``success``, ``failure``, ``timeout`` or ``bypassed``."""
        self.ai_calls.labels(capability=capability, outcome=outcome).inc()

    def set_breaker_open(self, capability: str, is_open: bool) -> None:
        self.breaker_open.labels(capability=capability).set(1 if is_open else 0)

    def record_token_rejection(self, reason: str) -> None:
        self.token_rejections.labels(reason=reason).inc()

    def record_discovery(self, outcome: str) -> None:
        self.discovery_expansions.labels(outcome=outcome).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')
