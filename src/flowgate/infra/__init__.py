"""Infrastructure utilities: circuit breaking and keyed locks."""

from __future__ import annotations

from flowgate.infra.circuit_breaker import (
    BreakerConfig,
    BreakerRegistry,
    CircuitBreaker,
    CircuitBreakerOpen,
)
from flowgate.infra.locks import KeyedMutex

__all__ = [
    "BreakerConfig",
    "BreakerRegistry",
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "KeyedMutex",
]
