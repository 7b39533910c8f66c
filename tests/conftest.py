"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                          # Run all tests
    pytest tests/unit/test_gateway.py -v   # Run specific test file

Every test gets its own SQLite file database (aiosqlite) and a scriptable
fake of the platform APIs plugged into httpx through ``MockTransport``.
"""

import os

# Settings are read at import time; pin them before flowgate is imported.
os.environ.setdefault("FLOWGATE_ENV", "test")
os.environ.setdefault("FLOWGATE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FLOWGATE_UPSTREAM_BACKOFF_MIN_S", "0")
os.environ.setdefault("FLOWGATE_UPSTREAM_BACKOFF_MAX_S", "0")

import asyncio
import uuid
from typing import Any, AsyncGenerator, Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowgate.billing.ledger import CreditLedger
from flowgate.db.models import Base, Connection, Platform
from flowgate.db.session import build_engine, build_sessionmaker, db_session
from flowgate.facade import OrchestrationFacade, Principal
from flowgate.gateway import ProxyGateway
from flowgate.infra.circuit_breaker import BreakerConfig, BreakerRegistry


# ─────────────────────────────────────────────────────────────────────────────
# Fake platform APIs
# ─────────────────────────────────────────────────────────────────────────────

class FakeUpstream:
    """Scriptable stand-in for n8n / Make.com HTTP APIs.

    Routes are keyed by (method, path). Each route holds a queue of replies;
    the last reply repeats once the queue is drained. A reply is one of:
        (status, body)         JSON body, or text when body is a str
        Exception              raised from the transport
        callable(request)      sync or async, returns one of the above
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Any]] = {}

    def on(self, method: str, path: str, *replies: Any) -> None:
        self._routes[(method.upper(), path)] = list(replies)

    def calls(self, method: str, path: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method.upper() and (path is None or r.url.path == path)
        ]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "no route"})
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(request)
            if asyncio.iscoroutine(reply):
                reply = await reply
        if isinstance(reply, Exception):
            raise reply
        status, body = reply
        if body is None:
            return httpx.Response(status)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def gateway(upstream: FakeUpstream) -> AsyncGenerator[ProxyGateway, None]:
    gw = ProxyGateway(
        transport=httpx.MockTransport(upstream),
        timeout_s=2.0,
        read_attempts=3,
        write_attempts=2,
        backoff_min_s=0,
        backoff_max_s=0,
        breakers=BreakerRegistry(BreakerConfig(failure_threshold=50, recovery_timeout=30.0)),
    )
    yield gw
    await gw.aclose()


@pytest.fixture
def make_connection() -> Callable[..., Connection]:
    """Build an unsaved Connection for adapter and gateway tests."""

    def _make(platform: Platform = Platform.N8N, **overrides: Any) -> Connection:
        defaults: dict[str, Any] = {
            "id": uuid.uuid4(),
            "tenant_id": "tenant-1",
            "platform": platform,
            "base_url": "https://n8n.example.com" if platform == Platform.N8N else "",
            "credential": "secret-key",
            "settings": {},
            "is_active": True,
        }
        defaults.update(overrides)
        return Connection(**defaults)

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'flowgate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(engine)


@pytest.fixture
def ledger(sessionmaker) -> CreditLedger:
    return CreditLedger(sessionmaker)


@pytest.fixture
def facade(gateway, ledger, sessionmaker) -> OrchestrationFacade:
    return OrchestrationFacade(gateway, ledger, sessionmaker)


@pytest.fixture
def store_connection(sessionmaker, make_connection) -> Callable[..., Any]:
    """Persist a connection and return it."""

    async def _store(platform: Platform = Platform.N8N, **overrides: Any) -> Connection:
        connection = make_connection(platform, **overrides)
        async with db_session(sessionmaker) as db:
            db.add(connection)
        return connection

    return _store


@pytest.fixture
def tenant() -> Principal:
    """The tenant's own principal (principal id == tenant id)."""
    return Principal(id="tenant-1")


@pytest.fixture
def admin() -> Principal:
    return Principal(id="ops-1", role="admin")
