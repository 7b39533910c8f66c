"""n8n public API adapter (``/api/v1``).

n8n carries a native boolean ``active`` on every workflow and exposes
dedicated activate/deactivate endpoints, so the status mapping is direct.
Listing is cursor-paginated.
"""

from __future__ import annotations

from typing import Any

import structlog

from flowgate.db.models import Connection, Platform
from flowgate.errors import UpstreamMalformedResponse
from flowgate.platforms.base import (
    Execution,
    PlatformAdapter,
    WorkflowState,
    WorkflowStatus,
    parse_timestamp,
    require_dict,
    require_id,
    require_list,
)

logger = structlog.get_logger()

_PAGE_SIZE = 100
_MAX_PAGES = 50


def workflow_from_payload(payload: Any) -> WorkflowState:
    item = require_dict(payload, "n8n workflow")
    active = item.get("active")
    if not isinstance(active, bool):
        raise UpstreamMalformedResponse("n8n workflow has no boolean 'active' field")
    nodes = item.get("nodes")
    return WorkflowState(
        id=require_id(item, "n8n workflow"),
        name=str(item.get("name") or ""),
        status=WorkflowStatus.ACTIVE if active else WorkflowStatus.INACTIVE,
        platform=Platform.N8N,
        updated_at=parse_timestamp(item.get("updatedAt")),
        node_count=len(nodes) if isinstance(nodes, list) else None,
    )


def _execution_from_payload(payload: Any) -> Execution:
    item = require_dict(payload, "n8n execution")
    if item.get("status"):
        status = str(item["status"])
    elif item.get("finished") is True:
        status = "success"
    elif item.get("stoppedAt"):
        status = "error"
    else:
        status = "running"
    return Execution(
        id=require_id(item, "n8n execution"),
        workflow_id=str(item.get("workflowId") or ""),
        status=status,
        started_at=parse_timestamp(item.get("startedAt")),
        finished_at=parse_timestamp(item.get("stoppedAt")),
        raw=item,
    )


class N8nAdapter(PlatformAdapter):
    platform = Platform.N8N

    @staticmethod
    def api_url(connection: Connection, path: str) -> str:
        return f"{connection.base_url.rstrip('/')}/api/v1{path}"

    async def list(self, connection: Connection) -> list[WorkflowState]:
        workflows: list[WorkflowState] = []
        cursor: str | None = None
        for _ in range(_MAX_PAGES):
            params: dict[str, Any] = {"limit": _PAGE_SIZE}
            if cursor:
                params["cursor"] = cursor
            body = require_dict(
                await self._gateway.request(connection, "GET", self.api_url(connection, "/workflows"), params=params),
                "n8n workflow list",
            )
            workflows.extend(workflow_from_payload(item) for item in require_list(body.get("data"), "n8n workflow list"))
            cursor = body.get("nextCursor")
            if not cursor:
                break
        else:
            logger.warning("n8n_list_truncated", connection_id=str(connection.id), pages=_MAX_PAGES)
        return workflows

    async def get(self, connection: Connection, workflow_id: str) -> WorkflowState:
        body = await self._gateway.request(
            connection, "GET", self.api_url(connection, f"/workflows/{workflow_id}"),
        )
        return workflow_from_payload(body)

    async def set_status(
        self,
        connection: Connection,
        workflow_id: str,
        desired: WorkflowStatus,
    ) -> WorkflowState:
        action = "activate" if desired == WorkflowStatus.ACTIVE else "deactivate"
        body = await self._gateway.request(
            connection, "POST", self.api_url(connection, f"/workflows/{workflow_id}/{action}"),
        )
        return workflow_from_payload(body)

    async def probe(self, connection: Connection) -> None:
        await self._gateway.request(
            connection, "GET", self.api_url(connection, "/workflows"), params={"limit": 1},
        )

    async def list_executions(
        self, connection: Connection, workflow_id: str, limit: int = 20,
    ) -> list[Execution]:
        body = require_dict(
            await self._gateway.request(
                connection,
                "GET",
                self.api_url(connection, "/executions"),
                params={"workflowId": workflow_id, "limit": limit},
            ),
            "n8n execution list",
        )
        return [_execution_from_payload(item) for item in require_list(body.get("data"), "n8n execution list")]

    async def retry_execution(self, connection: Connection, execution_id: str) -> Execution:
        body = await self._gateway.request(
            connection, "POST", self.api_url(connection, f"/executions/{execution_id}/retry"),
        )
        return _execution_from_payload(body)

    async def push_workflow(
        self, connection: Connection, name: str, definition: dict[str, Any],
    ) -> WorkflowState:
        payload = {
            "name": name,
            "nodes": definition.get("nodes", []),
            "connections": definition.get("connections", {}),
            "settings": definition.get("settings") or {},
            "staticData": definition.get("staticData"),
        }
        body = await self._gateway.request(
            connection, "POST", self.api_url(connection, "/workflows"), json=payload,
        )
        return workflow_from_payload(body)
