"""
Resilience components.

Circuit breaker and jittered backoff for the Redis subscriber.
"""

from ws_gateway.components.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
)
from ws_gateway.components.resilience.retry import (
    RetryConfig,
    calculate_delay_with_jitter,
    create_redis_retry_config,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RetryConfig",
    "calculate_delay_with_jitter",
    "create_redis_retry_config",
]
