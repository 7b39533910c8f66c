"""Zapier adapter.

Zapier has no public management API. Listing reports the zaps an operator
registered on the connection (``settings["zaps"]``), each as Unsupported;
every state change is rejected before anything reaches the gateway.
"""

from __future__ import annotations

from typing import Any

from flowgate.db.models import Connection, Platform
from flowgate.errors import UnsupportedOperation, WorkflowNotFound
from flowgate.platforms.base import PlatformAdapter, WorkflowState, WorkflowStatus

_NO_CONTROL = "Zapier does not provide a workflow management API"


def _registered_zaps(connection: Connection) -> list[WorkflowState]:
    zaps: list[WorkflowState] = []
    for entry in (connection.settings or {}).get("zaps") or []:
        if isinstance(entry, dict) and entry.get("id"):
            zap_id, name = str(entry["id"]), str(entry.get("name") or "")
        elif isinstance(entry, (str, int)):
            zap_id, name = str(entry), ""
        else:
            continue
        zaps.append(
            WorkflowState(
                id=zap_id,
                name=name,
                status=WorkflowStatus.UNSUPPORTED,
                platform=Platform.ZAPIER,
            )
        )
    return zaps


class ZapierAdapter(PlatformAdapter):
    platform = Platform.ZAPIER
    supports_control = False

    async def list(self, connection: Connection) -> list[WorkflowState]:
        return _registered_zaps(connection)

    async def get(self, connection: Connection, workflow_id: str) -> WorkflowState:
        for zap in _registered_zaps(connection):
            if zap.id == workflow_id:
                return zap
        raise WorkflowNotFound(f"Zap {workflow_id} is not registered on this connection")

    async def set_status(
        self,
        connection: Connection,
        workflow_id: str,
        desired: WorkflowStatus,
    ) -> WorkflowState:
        raise UnsupportedOperation(_NO_CONTROL, platform=Platform.ZAPIER.value)

    async def probe(self, connection: Connection) -> None:
        raise UnsupportedOperation(_NO_CONTROL, platform=Platform.ZAPIER.value)

    async def push_workflow(
        self, connection: Connection, name: str, definition: dict[str, Any],
    ) -> WorkflowState:
        raise UnsupportedOperation(_NO_CONTROL, platform=Platform.ZAPIER.value)
