"""Flowgate application entry point: FastAPI over the orchestration facade.

Architecture:
- FastAPI for the /v1 API and health checks
- The principal arrives as trusted headers set by the fronting identity proxy
  (X-Principal-Id, X-Principal-Role); Flowgate never authenticates itself
- Async SQLAlchemy for connections and the credit ledger
- One shared httpx client (inside ProxyGateway) for all platform calls
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from flowgate import __version__
from flowgate.billing.ledger import CreditLedger
from flowgate.config import settings
from flowgate.db.models import CreditKind, Platform
from flowgate.db.session import close_db, get_sessionmaker, init_db
from flowgate.errors import ErrorCategory, FlowgateError
from flowgate.facade import OrchestrationFacade, Principal
from flowgate.gateway import ProxyGateway
from flowgate.platforms import WorkflowStatus

logger = structlog.get_logger()

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}

# Configure structlog
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
        if settings.env == "production"
        else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(settings.log_level.upper(), 20)),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)


# ═══════════════════════════════════════════════════════════════════════════════
# ERROR RENDERING
# ═══════════════════════════════════════════════════════════════════════════════

_STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.RETRY: 503,
    ErrorCategory.FIX_CONNECTION: 424,
    ErrorCategory.UPGRADE_PLAN: 402,
    ErrorCategory.NOT_AVAILABLE: 501,
    ErrorCategory.INSUFFICIENT_CREDITS: 402,
    ErrorCategory.INVALID_REQUEST: 400,
    ErrorCategory.UNAUTHORIZED: 403,
    ErrorCategory.CONFLICT: 409,
}

_STATUS_BY_CODE: dict[str, int] = {
    "upstream_timeout": 504,
    "connection_not_found": 404,
    "workflow_not_found": 404,
    "account_not_found": 404,
}


def status_for(error: FlowgateError) -> int:
    return _STATUS_BY_CODE.get(error.code) or _STATUS_BY_CATEGORY.get(error.category, 400)


async def flowgate_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, FlowgateError)
    return JSONResponse(status_code=status_for(exc), content={"error": exc.to_dict()})


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST MODELS
# ═══════════════════════════════════════════════════════════════════════════════

class StatusChange(BaseModel):
    status: WorkflowStatus


class CreditGrant(BaseModel):
    amount: int
    kind: CreditKind = CreditKind.BONUS
    reason: str = "admin_grant"


class PlanChange(BaseModel):
    tier: str


class BonusPreference(BaseModel):
    prefer_bonus_first: bool


class ConnectionConfig(BaseModel):
    platform: Platform
    base_url: str = ""
    credential: str = ""
    name: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


class WorkflowPush(BaseModel):
    name: str
    definition: dict[str, Any]


# ═══════════════════════════════════════════════════════════════════════════════
# DEPENDENCIES
# ═══════════════════════════════════════════════════════════════════════════════

def get_facade(request: Request) -> OrchestrationFacade:
    return request.app.state.facade


def get_principal(
    x_principal_id: str | None = Header(default=None),
    x_principal_role: str | None = Header(default=None),
) -> Principal | None:
    if not x_principal_id:
        return None
    return Principal(id=x_principal_id, role=x_principal_role or "member")


def build_facade() -> tuple[OrchestrationFacade, ProxyGateway]:
    sessionmaker = get_sessionmaker()
    gateway = ProxyGateway()
    ledger = CreditLedger(sessionmaker)
    return OrchestrationFacade(gateway, ledger, sessionmaker), gateway


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(facade: OrchestrationFacade | None = None) -> FastAPI:
    """Build the API. A prebuilt *facade* skips database and gateway setup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("app_starting", env=settings.env)
        gateway: ProxyGateway | None = None
        if getattr(app.state, "facade", None) is None:
            if settings.env == "development":
                logger.info("database_initializing")
                await init_db()
            app.state.facade, gateway = build_facade()

        yield

        logger.info("app_shutting_down")
        if gateway is not None:
            await gateway.aclose()
            await close_db()

    api = FastAPI(
        title="Flowgate",
        version=__version__,
        description="One control surface for n8n, Make.com and Zapier workflows, metered in credits",
        lifespan=lifespan,
    )
    api.state.facade = facade
    api.add_exception_handler(FlowgateError, flowgate_error_handler)

    @api.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "flowgate"}

    @api.get("/health/upstreams")
    async def health_upstreams(f: OrchestrationFacade = Depends(get_facade)) -> dict[str, Any]:
        """Circuit breaker state per connection."""
        return {"circuit_breakers": f.gateway.breakers.snapshots()}

    # ── Workflows ───────────────────────────────────────────────

    @api.get("/v1/tenants/{tenant_id}/platforms/{platform}/workflows")
    async def list_workflows(
        tenant_id: str,
        platform: str,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        listing = await f.list_workflows(principal, tenant_id, platform)
        return listing.to_dict()

    @api.put("/v1/tenants/{tenant_id}/platforms/{platform}/workflows/{workflow_id}/status")
    async def set_workflow_status(
        tenant_id: str,
        platform: str,
        workflow_id: str,
        body: StatusChange,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        result = await f.set_workflow_status(principal, tenant_id, platform, workflow_id, body.status)
        return result.to_dict()

    @api.get("/v1/tenants/{tenant_id}/n8n/workflows/{workflow_id}/executions")
    async def list_executions(
        tenant_id: str,
        workflow_id: str,
        limit: int = Query(default=20),
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        executions = await f.list_executions(principal, tenant_id, workflow_id, limit)
        return {"items": [e.to_dict() for e in executions]}

    @api.post("/v1/tenants/{tenant_id}/n8n/executions/{execution_id}/retry")
    async def retry_execution(
        tenant_id: str,
        execution_id: str,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        result = await f.retry_execution(principal, tenant_id, execution_id)
        return result.to_dict()

    @api.post("/v1/tenants/{tenant_id}/n8n/workflows")
    async def push_workflow(
        tenant_id: str,
        body: WorkflowPush,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        result = await f.push_workflow(principal, tenant_id, body.name, body.definition)
        return result.to_dict()

    # ── Connections ─────────────────────────────────────────────

    @api.get("/v1/tenants/{tenant_id}/connections")
    async def list_connections(
        tenant_id: str,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        connections = await f.list_connections(principal, tenant_id)
        return {"items": [c.to_dict() for c in connections]}

    @api.post("/v1/tenants/{tenant_id}/connections")
    async def configure_connection(
        tenant_id: str,
        body: ConnectionConfig,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        view = await f.configure_connection(
            principal,
            tenant_id,
            body.platform,
            base_url=body.base_url,
            credential=body.credential,
            settings=body.settings,
            name=body.name,
        )
        return view.to_dict()

    @api.delete("/v1/tenants/{tenant_id}/connections/{connection_id}")
    async def deactivate_connection(
        tenant_id: str,
        connection_id: str,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        view = await f.deactivate_connection(principal, tenant_id, connection_id)
        return view.to_dict()

    @api.post("/v1/tenants/{tenant_id}/platforms/{platform}/test")
    async def test_connection(
        tenant_id: str,
        platform: str,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        result = await f.test_connection(principal, tenant_id, platform)
        return result.to_dict()

    # ── Credits ─────────────────────────────────────────────────

    @api.get("/v1/tenants/{tenant_id}/credits")
    async def get_credit_balance(
        tenant_id: str,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        return await f.get_credit_balance(principal, tenant_id)

    @api.get("/v1/tenants/{tenant_id}/credits/transactions")
    async def get_transactions(
        tenant_id: str,
        limit: int = Query(default=50),
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        rows = await f.get_transactions(principal, tenant_id, limit)
        return {"items": [row.to_row() for row in rows]}

    @api.post("/v1/tenants/{tenant_id}/credits/grants")
    async def grant_credits(
        tenant_id: str,
        body: CreditGrant,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        result = await f.grant_credits(principal, tenant_id, body.amount, body.kind, body.reason)
        return result.to_dict()

    @api.put("/v1/tenants/{tenant_id}/credits/preference")
    async def set_prefer_bonus_first(
        tenant_id: str,
        body: BonusPreference,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        snapshot = await f.set_prefer_bonus_first(principal, tenant_id, body.prefer_bonus_first)
        return snapshot.to_dict()

    @api.put("/v1/tenants/{tenant_id}/plan")
    async def change_plan(
        tenant_id: str,
        body: PlanChange,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        snapshot = await f.change_plan(principal, tenant_id, body.tier)
        return snapshot.to_dict()

    @api.post("/v1/tenants/{tenant_id}/plan/renewals")
    async def renew_period(
        tenant_id: str,
        principal: Principal | None = Depends(get_principal),
        f: OrchestrationFacade = Depends(get_facade),
    ) -> dict[str, Any]:
        result = await f.renew_period(principal, tenant_id)
        return result.to_dict()

    return api


api = create_app()


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run("flowgate.app:api", host="0.0.0.0", port=8000, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
