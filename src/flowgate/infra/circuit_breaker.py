"""Per-connection circuit breaker for upstream platform calls.

Stops Flowgate from hammering a tenant's n8n or Make.com instance that is
down or misconfigured. Standard three-state machine:

  CLOSED ──(failure_threshold reached)───► OPEN
  OPEN   ──(recovery_timeout elapsed)────► HALF_OPEN
  HALF_OPEN ──(probe succeeds)───────────► CLOSED
  HALF_OPEN ──(probe fails)──────────────► OPEN

Only transient faults (unreachable, timeout, 5xx) count as failures. Auth
rejections and 4xx responses say nothing about the instance's health and are
reported to the breaker as successes.

Usage
-----
    breaker = registry.get(connection_id)
    await breaker.before_call()          # raises CircuitBreakerOpen
    try:
        result = await do_request()
    except TransientFault as exc:
        await breaker.on_failure(exc)
        raise
    await breaker.on_success()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum, auto

import structlog

logger = structlog.get_logger()


class BreakerState(Enum):
    CLOSED = auto()     # Normal: calls pass through
    OPEN = auto()       # Tripped: calls are blocked
    HALF_OPEN = auto()  # Recovery probe: one call allowed


class CircuitBreakerOpen(Exception):
    """Raised when a call is attempted while the breaker is OPEN."""

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = retry_after  # seconds until next probe
        super().__init__(
            f"Circuit breaker '{name}' is OPEN. "
            f"Retry after {retry_after:.1f}s."
        )


@dataclass(frozen=True)
class BreakerConfig:
    """Tuning parameters for one circuit breaker."""

    # Consecutive transient failures before tripping to OPEN
    failure_threshold: int = 5

    # Seconds to wait in OPEN state before allowing a probe
    recovery_timeout: float = 30.0


class CircuitBreaker:
    """Async circuit breaker for a single upstream connection."""

    def __init__(self, name: str, config: BreakerConfig) -> None:
        self.name = name
        self.config = config

        self._state = BreakerState.CLOSED
        self._failure_count: int = 0
        self._probe_in_flight: bool = False
        self._opened_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def before_call(self) -> None:
        async with self._lock:
            if self._state == BreakerState.OPEN:
                elapsed = time.monotonic() - self._opened_at
                if elapsed < self.config.recovery_timeout:
                    raise CircuitBreakerOpen(self.name, self.config.recovery_timeout - elapsed)
                self._state = BreakerState.HALF_OPEN
                self._probe_in_flight = False
                logger.info("circuit_breaker_half_open", name=self.name)

            if self._state == BreakerState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitBreakerOpen(self.name, 0.0)
                self._probe_in_flight = True

    async def on_success(self) -> None:
        async with self._lock:
            if self._state != BreakerState.CLOSED or self._failure_count:
                logger.info(
                    "circuit_breaker_closed",
                    name=self.name,
                    previous_failures=self._failure_count,
                )
            self._state = BreakerState.CLOSED
            self._failure_count = 0
            self._probe_in_flight = False

    async def on_failure(self, exc: BaseException) -> None:
        async with self._lock:
            self._failure_count += 1
            self._probe_in_flight = False
            logger.warning(
                "circuit_breaker_failure",
                name=self.name,
                state=self._state.name,
                failure_count=self._failure_count,
                threshold=self.config.failure_threshold,
                error=str(exc)[:200],
            )
            if (
                self._state == BreakerState.HALF_OPEN
                or self._failure_count >= self.config.failure_threshold
            ):
                self._state = BreakerState.OPEN
                self._opened_at = time.monotonic()
                logger.error(
                    "circuit_breaker_opened",
                    name=self.name,
                    failure_count=self._failure_count,
                    cooldown_s=self.config.recovery_timeout,
                )

    def abandon(self) -> None:
        """Forget an in-flight probe whose call never finished (e.g. cancelled)."""
        self._probe_in_flight = False

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.name,
            "failure_count": self._failure_count,
        }


class BreakerRegistry:
    """Lazily creates one breaker per key (connection id)."""

    def __init__(self, config: BreakerConfig | None = None) -> None:
        self._config = config or BreakerConfig()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        if key not in self._breakers:
            self._breakers[key] = CircuitBreaker(name=key, config=self._config)
        return self._breakers[key]

    def snapshots(self) -> list[dict]:
        return [cb.snapshot() for cb in self._breakers.values()]
