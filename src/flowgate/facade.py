"""Orchestration facade: the single entry point into Flowgate.

Each request walks the same state machine, logged under one ``request_id``:

  AUTHORIZING  principal, plan capability, active connection
  EXECUTING    adapter call through the proxy gateway
  METERING     debit inside the reservation taken before the write
  COMPLETED / FAILED

Nothing touches a platform until authorization has passed, and nothing is
debited unless the platform call succeeded. Billable writes reserve their
cost before the state-changing call, so a debit cannot fail for lack of
funds once the upstream side effect has landed. A toggle that finds the
workflow already in the requested state returns before any funds check.

Cancellation
------------
Cancelled before EXECUTING finishes → the reservation is released, nothing is
billed. Cancelled after it finishes → the upstream change already happened;
the debit is shielded and completes, ``upstream_committed_after_cancel`` is
logged and the caller still sees ``CancelledError``.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Iterator

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowgate.billing.ledger import AccountSnapshot, CreditLedger, Reservation, TransactionResult
from flowgate.billing.plans import (
    N8N_MONITORING,
    N8N_PUSH,
    WORKFLOW_CONTROL,
    WORKFLOW_LISTING,
    PlanResolver,
)
from flowgate.config import settings
from flowgate.db.models import Connection, CreditKind, CreditTransaction, Platform
from flowgate.db.session import db_session
from flowgate.errors import (
    ConcurrentModification,
    ConnectionNotFound,
    FlowgateError,
    InvalidRequest,
    PlanUpgradeRequired,
    Unauthorized,
    UnsupportedOperation,
    UpstreamError,
)
from flowgate.gateway import ProxyGateway
from flowgate.infra.locks import KeyedMutex, LockBusy
from flowgate.platforms import Execution, PlatformAdapter, WorkflowState, WorkflowStatus, build_adapters

logger = structlog.get_logger()

ADMIN_ROLE = "admin"
MAX_EXECUTION_PAGE = 100


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST / RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════════

class RequestPhase(str, Enum):
    AUTHORIZING = "authorizing"
    EXECUTING = "executing"
    METERING = "metering"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, as vouched for by the identity provider."""

    id: str
    role: str = "member"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def may_act_for(self, tenant_id: str) -> bool:
        return self.is_admin or self.id == tenant_id


@dataclass(frozen=True)
class ConnectionView:
    """A stored connection without its credential."""

    id: uuid.UUID
    tenant_id: str
    platform: Platform
    name: str | None
    base_url: str
    settings: dict[str, Any]
    is_active: bool
    last_tested_at: datetime | None
    last_test_success: bool | None

    @classmethod
    def of(cls, connection: Connection) -> ConnectionView:
        return cls(
            id=connection.id,
            tenant_id=connection.tenant_id,
            platform=connection.platform,
            name=connection.name,
            base_url=connection.base_url,
            settings=dict(connection.settings or {}),
            is_active=connection.is_active,
            last_tested_at=connection.last_tested_at,
            last_test_success=connection.last_test_success,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "platform": self.platform.value,
            "name": self.name,
            "base_url": self.base_url,
            "settings": self.settings,
            "is_active": self.is_active,
            "last_tested_at": self.last_tested_at.isoformat() if self.last_tested_at else None,
            "last_test_success": self.last_test_success,
        }


@dataclass
class WorkflowListing:
    """``status`` says whether this platform's workflows can be controlled:
    Active for n8n / Make.com, Unsupported for Zapier."""

    platform: Platform
    status: WorkflowStatus
    items: list[WorkflowState] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform.value,
            "status": self.status.value,
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class MeteredResult:
    """Common billing fields of every billable operation's result."""

    billed: bool = False
    credits_charged: int = 0
    transaction: TransactionResult | None = None
    billing_error: dict[str, Any] | None = None

    def _billing_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "billed": self.billed,
            "credits_charged": self.credits_charged,
            "balance": self.transaction.account.to_dict() if self.transaction else None,
        }
        if self.billing_error:
            payload["billing_error"] = self.billing_error
        return payload


@dataclass
class ToggleResult(MeteredResult):
    state: WorkflowState | None = None
    noop: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.to_dict() if self.state else None,
            "noop": self.noop,
            **self._billing_dict(),
        }


@dataclass
class PushResult(MeteredResult):
    state: WorkflowState | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state.to_dict() if self.state else None, **self._billing_dict()}


@dataclass
class RetryResult(MeteredResult):
    execution: Execution | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"execution": self.execution.to_dict() if self.execution else None, **self._billing_dict()}


@dataclass(frozen=True)
class ConnectionTestResult:
    connection: ConnectionView
    success: bool
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"connection": self.connection.to_dict(), "success": self.success, "error": self.error}


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST TRACING
# ═══════════════════════════════════════════════════════════════════════════════

class _Trace:
    def __init__(self, operation: str, **context: Any) -> None:
        self.request_id = uuid.uuid4().hex[:12]
        self.phase = RequestPhase.AUTHORIZING
        self.log = logger.bind(operation=operation, request_id=self.request_id, **context)
        self._t0 = time.monotonic()

    def enter(self, phase: RequestPhase) -> None:
        self.phase = phase
        self.log.debug("request_phase", phase=phase.value)

    def elapsed_ms(self) -> int:
        return round((time.monotonic() - self._t0) * 1000)


@contextmanager
def _traced(operation: str, **context: Any) -> Iterator[_Trace]:
    trace = _Trace(operation, **context)
    try:
        yield trace
    except FlowgateError as e:
        failed_in = trace.phase
        trace.phase = RequestPhase.FAILED
        trace.log.info(
            "request_failed",
            phase=failed_in.value,
            error_code=e.code,
            category=e.category.value,
            elapsed_ms=trace.elapsed_ms(),
        )
        raise
    except asyncio.CancelledError:
        trace.log.info("request_cancelled", phase=trace.phase.value, elapsed_ms=trace.elapsed_ms())
        raise
    except Exception as e:
        trace.phase = RequestPhase.FAILED
        trace.log.error("request_failed_unexpected", error=str(e), error_type=type(e).__name__)
        raise
    else:
        trace.phase = RequestPhase.COMPLETED
        trace.log.info("request_completed", elapsed_ms=trace.elapsed_ms())


# ═══════════════════════════════════════════════════════════════════════════════
# FACADE
# ═══════════════════════════════════════════════════════════════════════════════

def _coerce_platform(platform: Platform | str) -> Platform:
    try:
        return Platform(platform)
    except ValueError as e:
        raise InvalidRequest(f"Unknown platform '{platform}'", platform=str(platform)) from e


def _coerce_desired(desired: WorkflowStatus | str) -> WorkflowStatus:
    try:
        status = WorkflowStatus(desired)
    except ValueError as e:
        raise InvalidRequest(f"Unknown workflow status '{desired}'") from e
    if status == WorkflowStatus.UNSUPPORTED:
        raise InvalidRequest("Desired status must be Active or Inactive")
    return status


class OrchestrationFacade:
    """Authorize → execute → meter, for every operation Flowgate offers."""

    def __init__(
        self,
        gateway: ProxyGateway,
        ledger: CreditLedger,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        *,
        adapters: dict[Platform, PlatformAdapter] | None = None,
        resolver: PlanResolver | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._sessionmaker = sessionmaker
        self._adapters = adapters or build_adapters(gateway)
        self._resolver = resolver or ledger.resolver
        self._connection_writes = KeyedMutex("connection_writes")
        self._connection_config = KeyedMutex("connection_config")

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    @property
    def gateway(self) -> ProxyGateway:
        return self._gateway

    # ─────────────────────────────────────────────────────────────────────
    # Workflows
    # ─────────────────────────────────────────────────────────────────────

    async def list_workflows(
        self, principal: Principal | None, tenant_id: str, platform: Platform | str,
    ) -> WorkflowListing:
        platform = _coerce_platform(platform)
        with _traced("list_workflows", tenant_id=tenant_id, platform=platform.value) as trace:
            self._authorize_principal(principal, tenant_id)
            await self._require_capability(tenant_id, WORKFLOW_LISTING)
            connection = await self._active_connection(tenant_id, platform)
            adapter = self._adapters[platform]

            trace.enter(RequestPhase.EXECUTING)
            items = await adapter.list(connection)
            trace.log.info("workflows_listed", count=len(items))

            status = WorkflowStatus.ACTIVE if adapter.supports_control else WorkflowStatus.UNSUPPORTED
            return WorkflowListing(platform=platform, status=status, items=items)

    async def set_workflow_status(
        self,
        principal: Principal | None,
        tenant_id: str,
        platform: Platform | str,
        workflow_id: str,
        desired: WorkflowStatus | str,
    ) -> ToggleResult:
        platform = _coerce_platform(platform)
        desired = _coerce_desired(desired)
        with _traced(
            "set_workflow_status",
            tenant_id=tenant_id,
            platform=platform.value,
            workflow_id=workflow_id,
            desired=desired.value,
        ) as trace:
            self._authorize_principal(principal, tenant_id)
            adapter = self._adapters[platform]
            if not adapter.supports_control:
                raise UnsupportedOperation(
                    f"{platform.value} workflows cannot be activated or deactivated from here",
                    platform=platform.value,
                )
            await self._require_capability(tenant_id, WORKFLOW_CONTROL)
            connection = await self._active_connection(tenant_id, platform)

            async with self._exclusive(connection):
                trace.enter(RequestPhase.EXECUTING)
                current = await adapter.get(connection, workflow_id)
                if current.status == desired:
                    trace.log.info("workflow_status_unchanged", status=current.status.value)
                    return ToggleResult(state=current, noop=True)

                # Only a real change reserves credits; the tenant lock spans the write alone.
                async with self._ledger.reserve(tenant_id, settings.toggle_credit_cost) as hold:
                    state = await adapter.set_status(connection, workflow_id, desired)
                    trace.log.info("workflow_status_changed", previous=current.status.value, status=state.status.value)

                    trace.enter(RequestPhase.METERING)
                    result = ToggleResult(state=state)
                    await self._meter(trace, hold, result, reason="toggle", connection=connection)
                    return result

    # ─────────────────────────────────────────────────────────────────────
    # n8n monitoring and push
    # ─────────────────────────────────────────────────────────────────────

    async def list_executions(
        self,
        principal: Principal | None,
        tenant_id: str,
        workflow_id: str,
        limit: int = 20,
    ) -> list[Execution]:
        if not 1 <= limit <= MAX_EXECUTION_PAGE:
            raise InvalidRequest(f"limit must be between 1 and {MAX_EXECUTION_PAGE}", limit=limit)
        with _traced("list_executions", tenant_id=tenant_id, workflow_id=workflow_id) as trace:
            self._authorize_principal(principal, tenant_id)
            await self._require_capability(tenant_id, N8N_MONITORING)
            connection = await self._active_connection(tenant_id, Platform.N8N)

            trace.enter(RequestPhase.EXECUTING)
            executions = await self._adapters[Platform.N8N].list_executions(connection, workflow_id, limit)
            trace.log.info("executions_listed", count=len(executions))
            return executions

    async def retry_execution(
        self, principal: Principal | None, tenant_id: str, execution_id: str,
    ) -> RetryResult:
        with _traced("retry_execution", tenant_id=tenant_id, execution_id=execution_id) as trace:
            self._authorize_principal(principal, tenant_id)
            await self._require_capability(tenant_id, N8N_MONITORING)
            connection = await self._active_connection(tenant_id, Platform.N8N)

            async with self._exclusive(connection):
                async with self._ledger.reserve(tenant_id, settings.retry_credit_cost) as hold:
                    trace.enter(RequestPhase.EXECUTING)
                    execution = await self._adapters[Platform.N8N].retry_execution(connection, execution_id)

                    trace.enter(RequestPhase.METERING)
                    result = RetryResult(execution=execution)
                    await self._meter(trace, hold, result, reason="execution_retry", connection=connection)
                    return result

    async def push_workflow(
        self,
        principal: Principal | None,
        tenant_id: str,
        name: str,
        definition: dict[str, Any],
    ) -> PushResult:
        if not name or not name.strip():
            raise InvalidRequest("Workflow name is required")
        if not isinstance(definition, dict) or not isinstance(definition.get("nodes"), list):
            raise InvalidRequest("Workflow definition must contain a 'nodes' list")

        with _traced("push_workflow", tenant_id=tenant_id, workflow_name=name) as trace:
            self._authorize_principal(principal, tenant_id)
            await self._require_capability(tenant_id, N8N_PUSH)
            connection = await self._active_connection(tenant_id, Platform.N8N)

            async with self._exclusive(connection):
                async with self._ledger.reserve(tenant_id, settings.push_credit_cost) as hold:
                    trace.enter(RequestPhase.EXECUTING)
                    state = await self._adapters[Platform.N8N].push_workflow(connection, name.strip(), definition)
                    trace.log.info("workflow_pushed", workflow_id=state.id, node_count=state.node_count)

                    trace.enter(RequestPhase.METERING)
                    result = PushResult(state=state)
                    await self._meter(trace, hold, result, reason="push", connection=connection)
                    return result

    # ─────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────

    async def configure_connection(
        self,
        principal: Principal | None,
        tenant_id: str,
        platform: Platform | str,
        *,
        base_url: str = "",
        credential: str = "",
        settings: dict[str, Any] | None = None,
        name: str | None = None,
    ) -> ConnectionView:
        """Store a new active connection, soft-deactivating the previous one."""
        platform = _coerce_platform(platform)
        base_url = (base_url or "").strip().rstrip("/")
        if platform != Platform.ZAPIER and not credential:
            raise InvalidRequest(f"An API key is required for {platform.value}")
        if platform == Platform.N8N and not base_url.startswith(("http://", "https://")):
            raise InvalidRequest("n8n connections need an http(s) instance URL", base_url=base_url)
        if settings is not None and not isinstance(settings, dict):
            raise InvalidRequest("Connection settings must be an object")

        with _traced("configure_connection", tenant_id=tenant_id, platform=platform.value) as trace:
            self._authorize_principal(principal, tenant_id)
            await self._ensure_account(tenant_id)

            async with self._connection_config.hold(f"{tenant_id}:{platform.value}"):
                async with db_session(self._sessionmaker) as db:
                    now = datetime.now(timezone.utc)
                    replaced = await db.execute(
                        update(Connection)
                        .where(
                            Connection.tenant_id == tenant_id,
                            Connection.platform == platform,
                            Connection.is_active.is_(True),
                        )
                        .values(is_active=False, deactivated_at=now, updated_at=now)
                    )
                    connection = Connection(
                        id=uuid.uuid4(),
                        tenant_id=tenant_id,
                        platform=platform,
                        name=name,
                        base_url=base_url,
                        credential=credential,
                        settings=settings or {},
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(connection)
                    await db.flush()
                    trace.log.info(
                        "connection_configured",
                        connection_id=str(connection.id),
                        replaced=replaced.rowcount or 0,
                    )
                    return ConnectionView.of(connection)

    async def deactivate_connection(
        self, principal: Principal | None, tenant_id: str, connection_id: uuid.UUID | str,
    ) -> ConnectionView:
        try:
            connection_id = uuid.UUID(str(connection_id))
        except ValueError as e:
            raise InvalidRequest("Invalid connection id") from e

        with _traced("deactivate_connection", tenant_id=tenant_id, connection_id=str(connection_id)) as trace:
            self._authorize_principal(principal, tenant_id)
            async with db_session(self._sessionmaker) as db:
                connection = await db.get(Connection, connection_id)
                if connection is None or connection.tenant_id != tenant_id:
                    raise ConnectionNotFound("Connection not found", connection_id=str(connection_id))
                if connection.is_active:
                    connection.is_active = False
                    connection.deactivated_at = datetime.now(timezone.utc)
                    await db.flush()
                    trace.log.info("connection_deactivated")
                return ConnectionView.of(connection)

    async def list_connections(self, principal: Principal | None, tenant_id: str) -> list[ConnectionView]:
        self._authorize_principal(principal, tenant_id)
        async with db_session(self._sessionmaker) as db:
            rows = await db.execute(
                select(Connection)
                .where(Connection.tenant_id == tenant_id)
                .order_by(Connection.created_at.desc())
            )
            return [ConnectionView.of(c) for c in rows.scalars().all()]

    async def test_connection(
        self, principal: Principal | None, tenant_id: str, platform: Platform | str,
    ) -> ConnectionTestResult:
        """Probe the active connection and record the outcome on it."""
        platform = _coerce_platform(platform)
        with _traced("test_connection", tenant_id=tenant_id, platform=platform.value) as trace:
            self._authorize_principal(principal, tenant_id)
            adapter = self._adapters[platform]
            if not adapter.supports_control:
                raise UnsupportedOperation(
                    f"{platform.value} connections cannot be tested", platform=platform.value,
                )
            connection = await self._active_connection(tenant_id, platform)

            trace.enter(RequestPhase.EXECUTING)
            error: dict[str, Any] | None = None
            try:
                await adapter.probe(connection)
            except UpstreamError as e:
                error = e.to_dict()
            success = error is None
            trace.log.info("connection_tested", connection_id=str(connection.id), success=success)

            async with db_session(self._sessionmaker) as db:
                stored = await db.get(Connection, connection.id)
                if stored is None:
                    raise ConnectionNotFound("Connection disappeared during test")
                stored.last_tested_at = datetime.now(timezone.utc)
                stored.last_test_success = success
                await db.flush()
                return ConnectionTestResult(connection=ConnectionView.of(stored), success=success, error=error)

    # ─────────────────────────────────────────────────────────────────────
    # Credits and plans
    # ─────────────────────────────────────────────────────────────────────

    async def get_credit_balance(self, principal: Principal | None, tenant_id: str) -> dict[str, Any]:
        self._authorize_principal(principal, tenant_id)
        snapshot = await self._ensure_account(tenant_id)
        return {
            "regular": snapshot.regular,
            "bonus": snapshot.bonus,
            "total": snapshot.total,
            "tier": snapshot.tier,
        }

    async def get_transactions(
        self, principal: Principal | None, tenant_id: str, limit: int = 50,
    ) -> list[CreditTransaction]:
        self._authorize_principal(principal, tenant_id)
        return await self._ledger.transactions(tenant_id, limit)

    async def grant_credits(
        self,
        principal: Principal | None,
        tenant_id: str,
        amount: int,
        kind: CreditKind | str,
        reason: str,
    ) -> TransactionResult:
        with _traced("grant_credits", tenant_id=tenant_id, amount=amount, kind=str(kind)):
            self._require_admin(principal)
            await self._ensure_account(tenant_id)
            return await self._ledger.credit(tenant_id, amount, kind, reason or "admin_grant")

    async def change_plan(self, principal: Principal | None, tenant_id: str, new_tier: str) -> AccountSnapshot:
        with _traced("change_plan", tenant_id=tenant_id, new_tier=new_tier):
            self._authorize_principal(principal, tenant_id)
            await self._ensure_account(tenant_id)
            result = await self._ledger.apply_plan_change(tenant_id, new_tier)
            return result.account

    async def renew_period(self, principal: Principal | None, tenant_id: str) -> TransactionResult:
        with _traced("renew_period", tenant_id=tenant_id):
            self._require_admin(principal)
            await self._ensure_account(tenant_id)
            return await self._ledger.renew_period(tenant_id)

    async def set_prefer_bonus_first(
        self, principal: Principal | None, tenant_id: str, prefer: bool,
    ) -> AccountSnapshot:
        self._authorize_principal(principal, tenant_id)
        await self._ensure_account(tenant_id)
        return await self._ledger.set_prefer_bonus_first(tenant_id, prefer)

    # ─────────────────────────────────────────────────────────────────────
    # Authorization helpers
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _authorize_principal(principal: Principal | None, tenant_id: str) -> None:
        if principal is None or not principal.id:
            raise Unauthorized("Authentication required")
        if not tenant_id:
            raise InvalidRequest("tenant_id is required")
        if not principal.may_act_for(tenant_id):
            raise Unauthorized("Principal may not act for this tenant", tenant_id=tenant_id)

    @staticmethod
    def _require_admin(principal: Principal | None) -> None:
        if principal is None or not principal.id:
            raise Unauthorized("Authentication required")
        if not principal.is_admin:
            raise Unauthorized("Administrator privileges required")

    async def _ensure_account(self, tenant_id: str) -> AccountSnapshot:
        """Every tenant starts on the free tier the first time it is seen."""
        snapshot = await self._ledger.find_account(tenant_id)
        if snapshot is None:
            snapshot = await self._ledger.open_account(tenant_id)
        return snapshot

    async def _require_capability(self, tenant_id: str, capability: str) -> None:
        snapshot = await self._ensure_account(tenant_id)
        if self._resolver.can_access_feature(snapshot.tier, capability):
            return
        raise PlanUpgradeRequired(
            self._resolver.upgrade_message(snapshot.tier, capability),
            capability=capability,
            tier=snapshot.tier,
            required_tier=self._resolver.minimum_tier_for(capability),
        )

    async def _active_connection(self, tenant_id: str, platform: Platform) -> Connection:
        async with db_session(self._sessionmaker) as db:
            result = await db.execute(
                select(Connection)
                .where(
                    Connection.tenant_id == tenant_id,
                    Connection.platform == platform,
                    Connection.is_active.is_(True),
                )
                .order_by(Connection.created_at.desc())
                .limit(1)
            )
            connection = result.scalar_one_or_none()
        if connection is None:
            raise ConnectionNotFound(
                f"No active {platform.value} connection configured", platform=platform.value,
            )
        return connection

    @asynccontextmanager
    async def _exclusive(self, connection: Connection) -> AsyncIterator[None]:
        """One in-flight upstream write per connection; a second caller fails fast."""
        try:
            async with self._connection_writes.acquire_nowait(str(connection.id)):
                yield
        except LockBusy as e:
            raise ConcurrentModification(
                "Another change on this connection is still in progress",
                connection_id=str(connection.id),
            ) from e

    # ─────────────────────────────────────────────────────────────────────
    # Metering
    # ─────────────────────────────────────────────────────────────────────

    async def _meter(
        self,
        trace: _Trace,
        hold: Reservation,
        result: MeteredResult,
        *,
        reason: str,
        connection: Connection,
    ) -> None:
        """Commit the reserved debit onto *result*. Runs to completion even if cancelled."""
        commit = asyncio.ensure_future(hold.commit(reason, connection_id=connection.id))
        try:
            transaction = await asyncio.shield(commit)
        except asyncio.CancelledError:
            trace.log.warning("upstream_committed_after_cancel", reason=reason, amount=hold.amount)
            while not commit.done():
                try:
                    await asyncio.shield(commit)
                except asyncio.CancelledError:
                    continue
                except (FlowgateError, SQLAlchemyError):
                    break
            if not commit.cancelled() and commit.exception() is not None:
                trace.log.error("metering_failed_after_cancel", error=str(commit.exception()))
            raise
        except (FlowgateError, SQLAlchemyError) as e:
            trace.log.error("metering_failed_after_upstream_success", reason=reason, error=str(e))
            result.billing_error = {"message": str(e), "type": type(e).__name__}
            return

        if transaction is not None:
            result.billed = True
            result.credits_charged = hold.amount
            result.transaction = transaction

