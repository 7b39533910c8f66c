"""Shared adapter contract and the normalized workflow model.

Each platform encodes "is this workflow running" differently (a boolean on
n8n, a scheduling object on Make.com, nothing at all on Zapier). Adapters
own that translation in both directions; nothing outside an adapter looks at
a platform's native payload.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from flowgate.db.models import Connection, Platform
from flowgate.errors import UnsupportedOperation, UpstreamMalformedResponse

if TYPE_CHECKING:
    from flowgate.gateway import ProxyGateway


class WorkflowStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    UNSUPPORTED = "Unsupported"


@dataclass(frozen=True)
class WorkflowState:
    """Read-through projection of one upstream workflow. Never persisted."""

    id: str
    name: str
    status: WorkflowStatus
    platform: Platform
    updated_at: datetime | None = None
    node_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "platform": self.platform.value,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "node_count": self.node_count,
        }


@dataclass(frozen=True)
class Execution:
    """One run of a workflow, as reported by the platform."""

    id: str
    workflow_id: str
    status: str
    started_at: datetime | None = None
    finished_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class PlatformAdapter(ABC):
    """Capability interface implemented once per platform."""

    platform: Platform
    supports_control: bool = True

    def __init__(self, gateway: ProxyGateway) -> None:
        self._gateway = gateway

    @abstractmethod
    async def list(self, connection: Connection) -> list[WorkflowState]:
        """All workflows visible through *connection*."""

    @abstractmethod
    async def get(self, connection: Connection, workflow_id: str) -> WorkflowState:
        """Current state of one workflow."""

    @abstractmethod
    async def set_status(
        self,
        connection: Connection,
        workflow_id: str,
        desired: WorkflowStatus,
    ) -> WorkflowState:
        """Drive *workflow_id* to *desired* and return the resulting state."""

    async def probe(self, connection: Connection) -> None:
        """Cheap authenticated call proving the credential works."""
        raise UnsupportedOperation(f"{self.platform.value} does not expose a management API")

    async def list_executions(
        self, connection: Connection, workflow_id: str, limit: int = 20,
    ) -> list[Execution]:
        raise UnsupportedOperation(f"Execution history is not available on {self.platform.value}")

    async def retry_execution(self, connection: Connection, execution_id: str) -> Execution:
        raise UnsupportedOperation(f"Execution retry is not available on {self.platform.value}")

    async def push_workflow(
        self, connection: Connection, name: str, definition: dict[str, Any],
    ) -> WorkflowState:
        raise UnsupportedOperation(f"Pushing workflows is not available on {self.platform.value}")


# ─────────────────────────────────────────────────────────────────────────────
# Parsing helpers shared by adapters
# ─────────────────────────────────────────────────────────────────────────────

def require_dict(payload: Any, what: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise UpstreamMalformedResponse(f"Expected an object for {what}, got {type(payload).__name__}")
    return payload


def require_list(payload: Any, what: str) -> list[Any]:
    if not isinstance(payload, list):
        raise UpstreamMalformedResponse(f"Expected a list for {what}, got {type(payload).__name__}")
    return payload


def require_id(item: dict[str, Any], what: str) -> str:
    raw = item.get("id")
    if raw is None or raw == "":
        raise UpstreamMalformedResponse(f"{what} is missing an id")
    return str(raw)


def parse_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
