"""
Reliability primitives: circuit breaker, idempotency leases and retry policy.
"""

from learnloop.reliability.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    get_circuit_breaker,
)
from learnloop.reliability.lease import DatabaseLeaseService, InMemoryLeaseService, LeaseService
from learnloop.reliability.retry_policy import RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "get_circuit_breaker",
    "LeaseService",
    "InMemoryLeaseService",
    "DatabaseLeaseService",
    "RetryPolicy",
]
