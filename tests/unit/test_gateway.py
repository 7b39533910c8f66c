"""Tests for the proxy gateway: retry policy, error mapping, timeouts, breaker."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from flowgate.errors import (
    ErrorCategory,
    UpstreamAuthFailed,
    UpstreamMalformedResponse,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnreachable,
    WorkflowNotFound,
)
from flowgate.gateway import ProxyGateway
from flowgate.infra.circuit_breaker import BreakerConfig, BreakerRegistry

URL = "https://n8n.example.com/api/v1/workflows"
PATH = "/api/v1/workflows"


# ─────────────────────────────────────────────────────────────────────────────
# Retry policy
# ─────────────────────────────────────────────────────────────────────────────

class TestReadRetries:
    @pytest.mark.asyncio
    async def test_read_retries_transient_5xx(self, gateway, upstream, make_connection):
        upstream.on("GET", PATH, (503, {"message": "busy"}), (502, None), (200, {"data": []}))
        body = await gateway.request(make_connection(), "GET", URL)
        assert body == {"data": []}
        assert len(upstream.requests) == 3

    @pytest.mark.asyncio
    async def test_read_gives_up_after_attempt_limit(self, gateway, upstream, make_connection):
        upstream.on("GET", PATH, (500, {"message": "down"}))
        with pytest.raises(UpstreamUnreachable) as excinfo:
            await gateway.request(make_connection(), "GET", URL)
        assert len(upstream.requests) == 3
        assert excinfo.value.retryable is True
        assert excinfo.value.category == ErrorCategory.RETRY

    @pytest.mark.asyncio
    async def test_read_retries_transport_errors(self, gateway, upstream, make_connection):
        upstream.on("GET", PATH, httpx.ReadError("reset"), (200, {"data": [1]}))
        assert await gateway.request(make_connection(), "GET", URL) == {"data": [1]}
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(self, gateway, upstream, make_connection):
        upstream.on("GET", PATH, (401, {"message": "bad key"}))
        with pytest.raises(UpstreamAuthFailed) as excinfo:
            await gateway.request(make_connection(), "GET", URL)
        assert len(upstream.requests) == 1
        assert excinfo.value.category == ErrorCategory.FIX_CONNECTION


class TestWriteRetries:
    @pytest.mark.asyncio
    async def test_write_not_retried_after_5xx(self, gateway, upstream, make_connection):
        upstream.on("POST", PATH, (500, {"message": "maybe applied"}))
        with pytest.raises(UpstreamUnreachable):
            await gateway.request(make_connection(), "POST", URL, json={})
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_write_not_retried_after_read_timeout(self, gateway, upstream, make_connection):
        upstream.on("POST", PATH, httpx.ReadTimeout("slow"))
        with pytest.raises(UpstreamTimeout):
            await gateway.request(make_connection(), "POST", URL, json={})
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_write_retried_once_after_connect_error(self, gateway, upstream, make_connection):
        upstream.on("POST", PATH, httpx.ConnectError("refused"), (200, {"id": "1"}))
        assert await gateway.request(make_connection(), "POST", URL, json={}) == {"id": "1"}
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_write_retried_at_most_once(self, gateway, upstream, make_connection):
        upstream.on("POST", PATH, httpx.ConnectError("refused"))
        with pytest.raises(UpstreamUnreachable) as excinfo:
            await gateway.request(make_connection(), "POST", URL, json={})
        assert len(upstream.requests) == 2
        assert excinfo.value.request_sent is False

    @pytest.mark.asyncio
    async def test_write_retried_after_throttle(self, gateway, upstream, make_connection):
        upstream.on("PATCH", PATH, (429, {"message": "slow down"}), (200, {"ok": True}))
        assert await gateway.request(make_connection(), "PATCH", URL, json={}) == {"ok": True}
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_write_connect_timeout_retried(self, gateway, upstream, make_connection):
        upstream.on("POST", PATH, httpx.ConnectTimeout("no route"), (200, {"ok": True}))
        assert await gateway.request(make_connection(), "POST", URL, json={}) == {"ok": True}
        assert len(upstream.requests) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Error mapping
# ─────────────────────────────────────────────────────────────────────────────

class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error",
        [
            (401, UpstreamAuthFailed),
            (403, UpstreamAuthFailed),
            (404, WorkflowNotFound),
            (400, UpstreamRejected),
            (422, UpstreamRejected),
        ],
    )
    async def test_status_codes(self, gateway, upstream, make_connection, status, error):
        upstream.on("GET", PATH, (status, {"message": "nope"}))
        with pytest.raises(error) as excinfo:
            await gateway.request(make_connection(), "GET", URL)
        assert excinfo.value.status_code == status

    @pytest.mark.asyncio
    async def test_non_json_body(self, gateway, upstream, make_connection):
        upstream.on("GET", PATH, (200, "<html>login</html>"))
        with pytest.raises(UpstreamMalformedResponse):
            await gateway.request(make_connection(), "GET", URL)

    @pytest.mark.asyncio
    async def test_empty_body_is_none(self, gateway, upstream, make_connection):
        upstream.on("POST", PATH, (204, None))
        assert await gateway.request(make_connection(), "POST", URL) is None

    @pytest.mark.asyncio
    async def test_httpx_errors_never_escape(self, gateway, upstream, make_connection):
        upstream.on("GET", PATH, httpx.RemoteProtocolError("garbage"))
        with pytest.raises(UpstreamUnreachable):
            await gateway.request(make_connection(), "GET", URL)


# ─────────────────────────────────────────────────────────────────────────────
# Timeouts
# ─────────────────────────────────────────────────────────────────────────────

class TestTimeouts:
    @pytest.mark.asyncio
    async def test_per_connection_timeout(self, gateway, upstream, make_connection):
        async def _hang(request):
            await asyncio.sleep(5)
            return 200, {}

        upstream.on("POST", PATH, _hang)
        conn = make_connection(settings={"timeout_s": 0.05})

        with pytest.raises(UpstreamTimeout) as excinfo:
            await gateway.request(conn, "POST", URL, json={})
        assert excinfo.value.retryable is True
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_timeout_override_falls_back_on_garbage(self, gateway, make_connection):
        assert gateway.timeout_for(make_connection(settings={"timeout_s": "soon"})) == 2.0
        assert gateway.timeout_for(make_connection(settings={"timeout_s": 7})) == 7.0


# ─────────────────────────────────────────────────────────────────────────────
# Circuit breaker integration
# ─────────────────────────────────────────────────────────────────────────────

class TestBreakerIntegration:
    @pytest.mark.asyncio
    async def test_open_breaker_fast_fails(self, upstream, make_connection):
        gw = ProxyGateway(
            transport=httpx.MockTransport(upstream),
            read_attempts=1,
            backoff_min_s=0,
            backoff_max_s=0,
            breakers=BreakerRegistry(BreakerConfig(failure_threshold=2, recovery_timeout=60.0)),
        )
        upstream.on("GET", PATH, (503, None))
        conn = make_connection()
        try:
            for _ in range(2):
                with pytest.raises(UpstreamUnreachable):
                    await gw.request(conn, "GET", URL)
            assert len(upstream.requests) == 2

            with pytest.raises(UpstreamUnreachable) as excinfo:
                await gw.request(conn, "GET", URL)
            assert excinfo.value.request_sent is False
            assert len(upstream.requests) == 2
        finally:
            await gw.aclose()

    @pytest.mark.asyncio
    async def test_client_errors_do_not_trip_breaker(self, upstream, make_connection):
        gw = ProxyGateway(
            transport=httpx.MockTransport(upstream),
            breakers=BreakerRegistry(BreakerConfig(failure_threshold=1, recovery_timeout=60.0)),
        )
        upstream.on("GET", PATH, (401, None))
        conn = make_connection()
        try:
            for _ in range(3):
                with pytest.raises(UpstreamAuthFailed):
                    await gw.request(conn, "GET", URL)
            assert len(upstream.requests) == 3
        finally:
            await gw.aclose()
