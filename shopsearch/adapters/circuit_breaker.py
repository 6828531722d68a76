"""Circuit breaker for AI capability calls."""

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger("circuit_breaker")


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, calls bypassed
    HALF_OPEN = "half_open"  # Cooldown elapsed, one probe in flight


class CircuitBreakerError(Exception):
    """Circuit breaker is open."""
    pass


class CircuitBreaker:
    """Circuit breaker for one AI capability.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures. Once
    ``cooldown_seconds`` have passed since the last failure, the next call
    runs as a probe (HALF_OPEN) while concurrent callers stay rejected. A
    probe success closes the breaker; a probe failure reopens it and
    restarts the cooldown.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_seconds: float = 30.0,
        expected_exception: type = Exception,
        name: str = "circuit_breaker",
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[Callable[[str, bool], None]] = None
    ):
        """Configure a circuit breaker.

        Parameters
        - failure_threshold: Consecutive failures before opening the breaker
        - cooldown_seconds: Seconds to wait before a HALF_OPEN probe
        - expected_exception: Exception type(s) treated as failures
        - name: Identifier for logs/metrics
        - clock: Monotonic time source (inject a fake one in tests)
        - on_state_change: Called with ``(name, is_open)`` after each transition
        """
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.expected_exception = expected_exception
        self.name = name
        self._clock = clock
        self._on_state_change = on_state_change

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.state != CircuitBreakerState.CLOSED

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection.

        Raises ``CircuitBreakerError`` without calling ``func`` when the
        breaker is open and either the cooldown has not elapsed or a probe
        is already running.
        """
        async with self._lock:
            if self.state == CircuitBreakerState.HALF_OPEN:
                raise CircuitBreakerError(f"Circuit breaker {self.name} is probing")
            probe = False
            if self.state == CircuitBreakerState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitBreakerState.HALF_OPEN
                    probe = True
                    logger.info("Circuit breaker transitioning to HALF_OPEN", name=self.name)
                else:
                    logger.debug("Circuit breaker is OPEN, rejecting call", name=self.name)
                    raise CircuitBreakerError(f"Circuit breaker {self.name} is open")

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.expected_exception:
            await self._on_failure(probe)
            raise
        except asyncio.CancelledError:
            if probe:
                self._release_probe()
            raise

        await self._on_success(probe)
        return result

    def _should_attempt_reset(self) -> bool:
        """Check if we should attempt to reset the circuit breaker."""
        if self.last_failure_time is None:
            return True

        return (self._clock() - self.last_failure_time) >= self.cooldown_seconds

    def time_to_reset(self) -> float:
        """Seconds until the next probe is allowed; 0 when closed or due."""
        if self.state == CircuitBreakerState.CLOSED or self.last_failure_time is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self.last_failure_time))

    async def _on_success(self, probe: bool = False):
        """Handle successful call.

        Calls admitted while CLOSED that finish after the breaker opened
        leave its count and cooldown untouched.
        """
        async with self._lock:
            if probe and self.state == CircuitBreakerState.HALF_OPEN:
                self.state = CircuitBreakerState.CLOSED
                self.last_failure_time = None
                logger.info("Circuit breaker reset to CLOSED", name=self.name)
                self._notify()
            elif self.state != CircuitBreakerState.CLOSED:
                return

            self.failure_count = 0

    async def _on_failure(self, probe: bool = False):
        """Handle failed call."""
        async with self._lock:
            if probe and self.state == CircuitBreakerState.HALF_OPEN:
                self.failure_count += 1
                self.last_failure_time = self._clock()
                self.state = CircuitBreakerState.OPEN
                logger.warning(
                    "Circuit breaker probe failed, staying OPEN",
                    name=self.name,
                    failure_count=self.failure_count,
                    cooldown_seconds=self.cooldown_seconds
                )
                self._notify()
            elif self.state == CircuitBreakerState.CLOSED:
                self.failure_count += 1
                self.last_failure_time = self._clock()
                if self.failure_count >= self.failure_threshold:
                    self.state = CircuitBreakerState.OPEN
                    logger.warning(
                        "Circuit breaker opened due to failures",
                        name=self.name,
                        failure_count=self.failure_count,
                        threshold=self.failure_threshold
                    )
                    self._notify()

    def _release_probe(self):
        """An abandoned probe leaves the breaker OPEN so the next call can probe."""
        if self.state == CircuitBreakerState.HALF_OPEN:
            self.state = CircuitBreakerState.OPEN

    def _notify(self):
        if self._on_state_change is not None:
            self._on_state_change(self.name, self.is_open)

    def get_stats(self) -> dict:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time,
            "cooldown_ms": int(self.cooldown_seconds * 1000),
            "time_to_reset_ms": int(round(self.time_to_reset() * 1000)),
        }

    async def force_open(self):
        """Force circuit breaker to open state."""
        async with self._lock:
            self.state = CircuitBreakerState.OPEN
            self.last_failure_time = self._clock()
            logger.warning("Circuit breaker forced to OPEN", name=self.name)
            self._notify()

    async def force_close(self):
        """Force circuit breaker to closed state."""
        async with self._lock:
            self.state = CircuitBreakerState.CLOSED
            self.failure_count = 0
            self.last_failure_time = None
            logger.info("Circuit breaker forced to CLOSED", name=self.name)
            self._notify()
