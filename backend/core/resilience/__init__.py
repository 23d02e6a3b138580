"""Resilience Patterns

Fault tolerance for the external content collaborator:
- Circuit breaker
- Retry with exponential backoff and jitter
- Timeouts that yield Err values
"""
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)

from .retry import (
    CombinedPolicy,
    RetryConfig,
    RetryPolicy,
    TimeoutPolicy,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CombinedPolicy",
    "RetryConfig",
    "RetryPolicy",
    "TimeoutPolicy",
]
