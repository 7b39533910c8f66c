"""Platform adapters: one per supported automation platform."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flowgate.db.models import Platform
from flowgate.platforms.base import (
    Execution,
    PlatformAdapter,
    WorkflowState,
    WorkflowStatus,
)
from flowgate.platforms.make import MakeAdapter
from flowgate.platforms.n8n import N8nAdapter
from flowgate.platforms.zapier import ZapierAdapter

if TYPE_CHECKING:
    from flowgate.gateway import ProxyGateway

_ADAPTERS: dict[Platform, type[PlatformAdapter]] = {
    Platform.N8N: N8nAdapter,
    Platform.MAKE: MakeAdapter,
    Platform.ZAPIER: ZapierAdapter,
}


def build_adapters(gateway: ProxyGateway) -> dict[Platform, PlatformAdapter]:
    """One adapter instance per platform, all sharing *gateway*."""
    return {platform: cls(gateway) for platform, cls in _ADAPTERS.items()}


__all__ = [
    "Execution",
    "MakeAdapter",
    "N8nAdapter",
    "PlatformAdapter",
    "WorkflowState",
    "WorkflowStatus",
    "ZapierAdapter",
    "build_adapters",
]
