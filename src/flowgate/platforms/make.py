"""Make.com API adapter (``https://{region}.make.com/api/v2``).

Make scenarios carry no boolean "active" flag. Activation lives in the
``scheduling`` object:

    scheduling absent, or type == "indefinitely"   → Inactive
    any other type ("immediately", "interval", …)  → Active

Deactivation PATCHes ``{"type": "indefinitely"}``; activation PATCHes
``{"type": "immediately"}``. "indefinitely" is the off sentinel and must
never be read as a schedule.

Region and organization id come from the connection settings, falling back
to what can be read off the instance URL
(``https://eu2.make.com/organization/4041934/...``).
"""

from __future__ import annotations

import re
from typing import Any

import structlog

from flowgate.config import settings
from flowgate.db.models import Connection, Platform
from flowgate.errors import InvalidRequest
from flowgate.platforms.base import (
    PlatformAdapter,
    WorkflowState,
    WorkflowStatus,
    parse_timestamp,
    require_dict,
    require_id,
    require_list,
)

logger = structlog.get_logger()

INACTIVE_SCHEDULING_TYPE = "indefinitely"
ACTIVATE_SCHEDULING_TYPE = "immediately"

_REGION_RE = re.compile(r"https://((?:us|eu)\d+)\.make\.com")
_ORGANIZATION_RE = re.compile(r"/organization/(\d+)")
_PAGE_SIZE = 100
_MAX_PAGES = 50


def status_from_scheduling(scheduling: Any) -> WorkflowStatus:
    """Derive a normalized status from a scenario's ``scheduling`` field."""
    if not isinstance(scheduling, dict):
        return WorkflowStatus.INACTIVE
    kind = scheduling.get("type")
    if not kind or kind == INACTIVE_SCHEDULING_TYPE:
        return WorkflowStatus.INACTIVE
    return WorkflowStatus.ACTIVE


def scheduling_for(desired: WorkflowStatus) -> dict[str, str]:
    if desired == WorkflowStatus.ACTIVE:
        return {"type": ACTIVATE_SCHEDULING_TYPE}
    if desired == WorkflowStatus.INACTIVE:
        return {"type": INACTIVE_SCHEDULING_TYPE}
    raise InvalidRequest(f"Cannot set a scenario to {desired.value}")


def scenario_from_payload(payload: Any) -> WorkflowState:
    item = require_dict(payload, "Make scenario")
    return WorkflowState(
        id=require_id(item, "Make scenario"),
        name=str(item.get("name") or ""),
        status=status_from_scheduling(item.get("scheduling")),
        platform=Platform.MAKE,
        updated_at=parse_timestamp(item.get("lastEdit") or item.get("updated")),
        node_count=None,
    )


def resolve_region(connection: Connection) -> str:
    configured = (connection.settings or {}).get("region")
    if configured:
        return str(configured)
    match = _REGION_RE.match(connection.base_url or "")
    if match:
        return match.group(1)
    return settings.make_default_region


def resolve_organization_id(connection: Connection) -> str | None:
    conn_settings = connection.settings or {}
    if conn_settings.get("organization_id"):
        return str(conn_settings["organization_id"])
    match = _ORGANIZATION_RE.search(connection.base_url or "")
    if match:
        return match.group(1)
    team_id = conn_settings.get("team_id")
    return str(team_id) if team_id else None


class MakeAdapter(PlatformAdapter):
    platform = Platform.MAKE

    @staticmethod
    def api_url(connection: Connection, path: str) -> str:
        return f"https://{resolve_region(connection)}.make.com/api/v2{path}"

    async def list(self, connection: Connection) -> list[WorkflowState]:
        organization_id = resolve_organization_id(connection)
        if organization_id is None:
            raise InvalidRequest("Make.com connection has no organization id configured")

        scenarios: list[WorkflowState] = []
        offset = 0
        for _ in range(_MAX_PAGES):
            body = require_dict(
                await self._gateway.request(
                    connection,
                    "GET",
                    self.api_url(connection, "/scenarios"),
                    params={
                        "organizationId": organization_id,
                        "pg[limit]": _PAGE_SIZE,
                        "pg[offset]": offset,
                    },
                ),
                "Make scenario list",
            )
            page = require_list(body.get("scenarios"), "Make scenario list")
            scenarios.extend(scenario_from_payload(item) for item in page)
            if len(page) < _PAGE_SIZE:
                break
            offset += _PAGE_SIZE
        else:
            logger.warning("make_list_truncated", connection_id=str(connection.id), pages=_MAX_PAGES)
        return scenarios

    async def get(self, connection: Connection, workflow_id: str) -> WorkflowState:
        body = require_dict(
            await self._gateway.request(connection, "GET", self.api_url(connection, f"/scenarios/{workflow_id}")),
            "Make scenario",
        )
        return scenario_from_payload(body.get("scenario"))

    async def set_status(
        self,
        connection: Connection,
        workflow_id: str,
        desired: WorkflowStatus,
    ) -> WorkflowState:
        scheduling = scheduling_for(desired)
        body = require_dict(
            await self._gateway.request(
                connection,
                "PATCH",
                self.api_url(connection, f"/scenarios/{workflow_id}"),
                json={"scheduling": scheduling},
            ),
            "Make scenario",
        )
        scenario = dict(require_dict(body.get("scenario"), "Make scenario"))
        # Some responses omit scheduling or echo it as null; the PATCH we just sent is then authoritative.
        if not isinstance(scenario.get("scheduling"), dict):
            scenario["scheduling"] = scheduling
        return scenario_from_payload(scenario)

    async def probe(self, connection: Connection) -> None:
        await self._gateway.request(connection, "GET", self.api_url(connection, "/users/me"))
