"""Subscription tiers, credit allocations and the feature-gate matrix.

Static configuration: nothing here touches the database or the network.
Unknown tier keys resolve to ``free`` so a stale tier string can never grant
more than the lowest plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_TIER = "free"
TIER_ORDER: tuple[str, ...] = ("free", "starter", "pro", "growth", "agency")

# Capability keys checked by the facade
WORKFLOW_LISTING = "workflow_listing"
WORKFLOW_CONTROL = "workflow_control"
N8N_PUSH = "n8n_push"
N8N_MONITORING = "n8n_monitoring"


@dataclass(frozen=True)
class SubscriptionPlan:
    """One tier's allocation and enabled capabilities. Immutable at runtime."""

    tier: str
    display_name: str
    monthly_credits: int
    rollover_max: int = 0
    features: frozenset[str] = field(default_factory=frozenset)

    def allows(self, capability: str) -> bool:
        return capability in self.features

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "display_name": self.display_name,
            "monthly_credits": self.monthly_credits,
            "rollover_max": self.rollover_max,
            "features": sorted(self.features),
        }


_FREE_FEATURES = frozenset({
    "workflow_generation",
    WORKFLOW_LISTING,
})
_STARTER_FEATURES = _FREE_FEATURES | {
    "code_generation",
    "history",
    "templates_limited",
    WORKFLOW_CONTROL,
}
_PRO_FEATURES = (_STARTER_FEATURES - {"templates_limited"}) | {
    "workflow_conversion",
    "workflow_debugging",
    "templates",
    "history_auto_save",
    "template_folders",
    "api_access",
    N8N_PUSH,
}
_GROWTH_FEATURES = _PRO_FEATURES | {
    "batch_operations",
    "workflow_sets",
    "advanced_export",
    N8N_MONITORING,
}
_AGENCY_FEATURES = _GROWTH_FEATURES | {
    "agency_dashboard",
    "team_access",
    "client_workspaces",
    "usage_analytics",
    "custom_branding",
    "priority_queue",
    "credit_delegation",
}

PLANS: dict[str, SubscriptionPlan] = {
    "free": SubscriptionPlan("free", "Free", monthly_credits=5, features=_FREE_FEATURES),
    "starter": SubscriptionPlan("starter", "Starter", monthly_credits=25, features=frozenset(_STARTER_FEATURES)),
    "pro": SubscriptionPlan("pro", "Pro", monthly_credits=100, features=frozenset(_PRO_FEATURES)),
    "growth": SubscriptionPlan("growth", "Growth", monthly_credits=250, features=frozenset(_GROWTH_FEATURES)),
    "agency": SubscriptionPlan("agency", "Agency", monthly_credits=750, features=frozenset(_AGENCY_FEATURES)),
}

_UPGRADE_HINTS: dict[str, str] = {
    WORKFLOW_CONTROL: "activate and deactivate workflows",
    N8N_PUSH: "push workflows directly to n8n",
    N8N_MONITORING: "monitor and retry n8n executions",
    "code_generation": "unlock the custom code generator",
    "history": "save and access your workflow history",
    "workflow_conversion": "unlock workflow conversion between platforms",
    "workflow_debugging": "unlock AI-powered debugging",
    "templates": "access all default templates",
    "api_access": "get API access",
    "batch_operations": "run batch operations and workflow sets",
    "team_access": "get multi-user team access",
}


class PlanResolver:
    """Pure lookups over a tier table (``PLANS`` unless one is injected)."""

    def __init__(self, plans: dict[str, SubscriptionPlan] | None = None) -> None:
        self._plans = plans or PLANS
        if DEFAULT_TIER not in self._plans:
            raise ValueError(f"Plan table must define the '{DEFAULT_TIER}' tier")

    def is_known(self, tier: str) -> bool:
        return tier in self._plans

    def get_plan(self, tier: str | None) -> SubscriptionPlan:
        return self._plans.get(tier or DEFAULT_TIER) or self._plans[DEFAULT_TIER]

    def monthly_allocation(self, tier: str | None) -> int:
        return self.get_plan(tier).monthly_credits

    def rollover_cap(self, tier: str | None) -> int:
        return self.get_plan(tier).rollover_max

    def can_access_feature(self, tier: str | None, capability: str) -> bool:
        return self.get_plan(tier).allows(capability)

    def minimum_tier_for(self, capability: str) -> str | None:
        """Lowest tier that includes *capability*, or None if no tier does."""
        for tier in TIER_ORDER:
            plan = self._plans.get(tier)
            if plan is not None and plan.allows(capability):
                return plan.tier
        return None

    def upgrade_message(self, tier: str | None, capability: str) -> str:
        required = self.minimum_tier_for(capability)
        if required is None or self.can_access_feature(tier, capability):
            return "Upgrade to access this feature"
        hint = _UPGRADE_HINTS.get(capability, "access this feature")
        return f"Upgrade to {self._plans[required].display_name} to {hint}"
