"""Resilience primitives shared by outbound API calls and storage access."""

from .policy import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    ResiliencePolicy,
    RetryConfig,
    TransientError,
    build_outbound_policy,
    build_storage_policy,
    compute_delay,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "ResiliencePolicy",
    "RetryConfig",
    "TransientError",
    "build_outbound_policy",
    "build_storage_policy",
    "compute_delay",
]
