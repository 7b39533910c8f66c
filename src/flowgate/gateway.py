"""Proxy gateway: the only code in Flowgate that talks to automation platforms.

For every upstream call the gateway
- resolves the connection's credential into the platform's auth header,
- enforces a per-connection timeout,
- retries under a bounded policy,
- and turns every transport outcome into either decoded JSON or a typed
  ``UpstreamError``. httpx exceptions never leave this module.

Retry policy
------------
  reads  (idempotent)  up to ``upstream_read_attempts`` tries on 5xx, 429,
                       transport errors and timeouts, exponential backoff
  writes               at most one extra try, and only when the request
                       provably never reached the platform (connect error,
                       connect timeout, 429). A read timeout or a 5xx after
                       a write may mean it landed, so it is never replayed.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from flowgate.config import settings
from flowgate.db.models import Connection, Platform
from flowgate.errors import (
    UpstreamAuthFailed,
    UpstreamError,
    UpstreamMalformedResponse,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnreachable,
    WorkflowNotFound,
)
from flowgate.infra.circuit_breaker import BreakerConfig, BreakerRegistry, CircuitBreakerOpen

logger = structlog.get_logger()

_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _auth_headers(connection: Connection) -> dict[str, str]:
    """Platform-specific credential header for *connection*."""
    if connection.platform == Platform.N8N:
        return {"X-N8N-API-KEY": connection.credential}
    if connection.platform == Platform.MAKE:
        return {"Authorization": f"Token {connection.credential}"}
    return {"Authorization": f"Bearer {connection.credential}"}


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (UpstreamUnreachable, UpstreamTimeout))


def _retryable_read(exc: BaseException) -> bool:
    return _is_transient(exc)


def _retryable_write(exc: BaseException) -> bool:
    return _is_transient(exc) and not exc.request_sent  # type: ignore[union-attr]


class ProxyGateway:
    """Authenticated, retrying, time-bounded HTTP access to platform APIs."""

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float | None = None,
        read_attempts: int | None = None,
        write_attempts: int | None = None,
        backoff_min_s: float | None = None,
        backoff_max_s: float | None = None,
        breakers: BreakerRegistry | None = None,
    ) -> None:
        self._timeout_s = timeout_s if timeout_s is not None else settings.upstream_timeout_s
        self._read_attempts = read_attempts or settings.upstream_read_attempts
        # Writes: one initial try plus at most one retry.
        self._write_attempts = min(write_attempts or settings.upstream_write_attempts, 2)
        self._backoff_min = backoff_min_s if backoff_min_s is not None else settings.upstream_backoff_min_s
        self._backoff_max = backoff_max_s if backoff_max_s is not None else settings.upstream_backoff_max_s
        self._breakers = breakers or BreakerRegistry(
            BreakerConfig(
                failure_threshold=settings.breaker_failure_threshold,
                recovery_timeout=settings.breaker_recovery_timeout_s,
            )
        )

        self._client = httpx.AsyncClient(
            transport=transport,
            headers={"Accept": "application/json", "User-Agent": "flowgate/0.1"},
            timeout=httpx.Timeout(self._timeout_s, connect=settings.upstream_connect_timeout_s),
            limits=httpx.Limits(max_connections=settings.upstream_max_connections),
        )

    @property
    def breakers(self) -> BreakerRegistry:
        return self._breakers

    async def aclose(self) -> None:
        await self._client.aclose()
        logger.info("proxy_gateway_closed")

    def timeout_for(self, connection: Connection) -> float:
        override = (connection.settings or {}).get("timeout_s")
        try:
            return float(override) if override else self._timeout_s
        except (TypeError, ValueError):
            return self._timeout_s

    async def request(
        self,
        connection: Connection,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Perform one logical upstream call and return the decoded JSON body.

        Raises:
            UpstreamUnreachable, UpstreamTimeout, UpstreamAuthFailed,
            UpstreamMalformedResponse, UpstreamRejected, WorkflowNotFound
        """
        method = method.upper()
        is_write = method in _WRITE_METHODS
        breaker = self._breakers.get(str(connection.id))
        log = logger.bind(
            connection_id=str(connection.id),
            platform=connection.platform.value,
            method=method,
            url=url,
        )

        try:
            await breaker.before_call()
        except CircuitBreakerOpen as e:
            log.warning("upstream_circuit_open", retry_after_s=round(e.retry_after, 1))
            raise UpstreamUnreachable(
                "Platform has been failing repeatedly; calls are paused",
                request_sent=False,
                retry_after_s=round(e.retry_after, 1),
            ) from e

        @retry(
            retry=retry_if_exception(_retryable_write if is_write else _retryable_read),
            stop=stop_after_attempt(self._write_attempts if is_write else self._read_attempts),
            wait=wait_exponential(multiplier=self._backoff_min, min=self._backoff_min, max=self._backoff_max),
            reraise=True,
        )
        async def _do_request() -> Any:
            return await self._send(connection, method, url, params=params, json=json, log=log)

        try:
            result = await _do_request()
        except UpstreamError as e:
            if _is_transient(e):
                await breaker.on_failure(e)
            else:
                await breaker.on_success()
            raise
        except BaseException:
            breaker.abandon()
            raise
        await breaker.on_success()
        return result

    async def _send(
        self,
        connection: Connection,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
        log: Any,
    ) -> Any:
        timeout_s = self.timeout_for(connection)
        t0 = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=_auth_headers(connection),
                ),
                timeout=timeout_s,
            )
        except httpx.ConnectTimeout as e:
            log.warning("upstream_connect_timeout", error=str(e))
            raise UpstreamTimeout(f"Timed out connecting to {connection.platform.value}", request_sent=False) from e
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            log.warning("upstream_timeout", timeout_s=timeout_s)
            raise UpstreamTimeout(
                f"{connection.platform.value} did not respond within {timeout_s:.0f}s",
            ) from e
        except httpx.ConnectError as e:
            log.warning("upstream_connect_failed", error=str(e))
            raise UpstreamUnreachable(f"Could not reach {connection.platform.value}", request_sent=False) from e
        except httpx.TransportError as e:
            log.warning("upstream_transport_error", error=str(e))
            raise UpstreamUnreachable(f"Connection to {connection.platform.value} failed: {e}") from e

        upstream_ms = round((time.monotonic() - t0) * 1000)
        status = response.status_code

        if status >= 400:
            log.warning("upstream_error_status", status_code=status, upstream_ms=upstream_ms, body=response.text[:300])
            raise self._error_for_status(connection, status, response)

        log.info("upstream_call_success", status_code=status, upstream_ms=upstream_ms)

        if status == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamMalformedResponse(
                f"{connection.platform.value} returned a non-JSON body",
                status_code=status,
            ) from e

    @staticmethod
    def _error_for_status(connection: Connection, status: int, response: httpx.Response) -> UpstreamError:
        name = connection.platform.value
        if status in (401, 403):
            return UpstreamAuthFailed(f"{name} rejected the stored credential", status_code=status)
        if status == 404:
            return WorkflowNotFound(f"{name} resource not found", status_code=status)
        if status == 429:
            return UpstreamUnreachable(f"{name} is rate limiting requests", status_code=status, request_sent=False)
        if status >= 500:
            return UpstreamUnreachable(f"{name} API error: {status}", status_code=status)
        return UpstreamRejected(
            f"{name} rejected the request: {status}",
            status_code=status,
            body=response.text[:300],
        )
