"""Resilience adapters around AI capabilities.

Includes the per-capability ``CircuitBreaker``, the ``AIResilienceGovernor``
that pairs each breaker with a fallback, and the fallbacks themselves.
"""
