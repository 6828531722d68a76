"""Resilience governor for AI-dependent query and ranking steps.

Every AI capability gets its own circuit breaker and a paired local
fallback. The governor never surfaces AI failures; open breakers,
exceptions and timeouts resolve to the fallback result.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ..common.config import RankingConfig
from ..common.metrics import RankingMetrics
from .circuit_breaker import CircuitBreaker, CircuitBreakerError

logger = structlog.get_logger("ai_governor")

TRANSLATE = "translate"
CLASSIFY_COMPLEXITY = "classify_complexity"
EXTRACT_FILTERS = "extract_filters"
RERANK = "rerank"

CAPABILITIES = (TRANSLATE, CLASSIFY_COMPLEXITY, EXTRACT_FILTERS, RERANK)


class AIResilienceGovernor:
    """Wraps AI calls in per-capability circuit breakers with fallbacks.

    Breakers are owned by the governor instance; build one governor per
    process and inject it where AI calls are made.
    """

    def __init__(
        self,
        config: Optional[RankingConfig] = None,
        metrics: Optional[RankingMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RankingConfig()
        self.metrics = metrics
        self.breakers: Dict[str, CircuitBreaker] = {
            capability: CircuitBreaker(
                failure_threshold=self.config.breaker_failure_threshold,
                cooldown_seconds=self.config.breaker_cooldown_seconds,
                name=capability,
                clock=clock,
                on_state_change=self._on_state_change,
            )
            for capability in CAPABILITIES
        }

    def breaker(self, capability: str) -> CircuitBreaker:
        try:
            return self.breakers[capability]
        except KeyError:
            raise ValueError(f"Unknown AI capability: {capability}")

    async def execute(
        self,
        capability: str,
        operation: Callable[[], Awaitable[Any]],
        fallback: Callable[[], Any],
    ) -> Any:
        """Run ``operation`` under the capability's breaker.

        ``operation`` is a zero-argument coroutine factory; it is not called
        at all when the breaker bypasses the request. ``fallback`` is a
        zero-argument callable producing the degraded result.
        """
        breaker = self.breaker(capability)
        timeout = self.config.ai_call_timeout_seconds

        async def bounded():
            return await asyncio.wait_for(operation(), timeout=timeout)

        try:
            result = await breaker.call(bounded)
        except CircuitBreakerError:
            self._record(capability, "bypassed")
            logger.debug("AI call bypassed, using fallback", capability=capability)
            return fallback()
        except asyncio.TimeoutError:
            self._record(capability, "timeout")
            logger.warning(
                "AI call timed out, using fallback",
                capability=capability,
                timeout_seconds=timeout,
                failure_count=breaker.failure_count,
            )
            return fallback()
        except Exception as e:
            self._record(capability, "failure")
            logger.warning(
                "AI call failed, using fallback",
                capability=capability,
                error=str(e),
                error_type=type(e).__name__,
                failure_count=breaker.failure_count,
            )
            return fallback()

        self._record(capability, "success")
        return result

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Read-only breaker status per capability."""
        return {
            capability: {
                "failure_count": breaker.failure_count,
                "is_open": breaker.is_open,
                "time_to_reset_ms": int(round(breaker.time_to_reset() * 1000)),
            }
            for capability, breaker in self.breakers.items()
        }

    async def reset(self, capability: Optional[str] = None) -> None:
        """Force one breaker (or all of them) CLOSED."""
        targets = [self.breaker(capability)] if capability else list(self.breakers.values())
        for breaker in targets:
            await breaker.force_close()
        logger.info("AI circuit breakers reset", capability=capability or "all")

    def _record(self, capability: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_ai_call(capability, outcome)

    def _on_state_change(self, capability: str, is_open: bool) -> None:
        if self.metrics is not None:
            self.metrics.set_breaker_open(capability, is_open)
