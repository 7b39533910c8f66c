"""Tests for the subscription plan table and PlanResolver lookups."""

from __future__ import annotations

import pytest

from flowgate.billing.plans import (
    N8N_MONITORING,
    N8N_PUSH,
    PLANS,
    TIER_ORDER,
    WORKFLOW_CONTROL,
    WORKFLOW_LISTING,
    PlanResolver,
    SubscriptionPlan,
)


@pytest.fixture
def resolver() -> PlanResolver:
    return PlanResolver()


class TestAllocations:
    @pytest.mark.parametrize(
        "tier, credits",
        [("free", 5), ("starter", 25), ("pro", 100), ("growth", 250), ("agency", 750)],
    )
    def test_monthly_allocation(self, resolver, tier, credits):
        assert resolver.monthly_allocation(tier) == credits

    def test_no_tier_rolls_over(self, resolver):
        assert all(resolver.rollover_cap(tier) == 0 for tier in TIER_ORDER)

    def test_unknown_tier_resolves_to_free(self, resolver):
        assert resolver.get_plan("platinum").tier == "free"
        assert resolver.get_plan(None).tier == "free"
        assert resolver.is_known("platinum") is False


class TestFeatureGates:
    def test_listing_everywhere(self, resolver):
        assert all(resolver.can_access_feature(tier, WORKFLOW_LISTING) for tier in TIER_ORDER)

    @pytest.mark.parametrize(
        "capability, minimum",
        [
            (WORKFLOW_CONTROL, "starter"),
            (N8N_PUSH, "pro"),
            (N8N_MONITORING, "growth"),
            ("team_access", "agency"),
            ("workflow_generation", "free"),
        ],
    )
    def test_minimum_tier(self, resolver, capability, minimum):
        assert resolver.minimum_tier_for(capability) == minimum

    def test_tiers_are_cumulative_for_platform_capabilities(self, resolver):
        for capability in (WORKFLOW_CONTROL, N8N_PUSH, N8N_MONITORING):
            minimum = TIER_ORDER.index(resolver.minimum_tier_for(capability))
            for index, tier in enumerate(TIER_ORDER):
                assert resolver.can_access_feature(tier, capability) is (index >= minimum)

    def test_unknown_capability(self, resolver):
        assert resolver.minimum_tier_for("teleportation") is None
        assert resolver.can_access_feature("agency", "teleportation") is False

    def test_upgrade_message_names_required_plan(self, resolver):
        assert resolver.upgrade_message("pro", N8N_MONITORING).startswith("Upgrade to Growth")
        assert resolver.upgrade_message("free", WORKFLOW_CONTROL).startswith("Upgrade to Starter")

    def test_upgrade_message_fallback(self, resolver):
        assert resolver.upgrade_message("free", "teleportation") == "Upgrade to access this feature"


class TestPlanTable:
    def test_plans_are_immutable(self):
        with pytest.raises(AttributeError):
            PLANS["free"].monthly_credits = 1000  # type: ignore[misc]

    def test_custom_table_needs_free_tier(self):
        with pytest.raises(ValueError):
            PlanResolver({"pro": SubscriptionPlan("pro", "Pro", monthly_credits=1)})

    def test_to_dict(self):
        payload = PLANS["growth"].to_dict()
        assert payload["monthly_credits"] == 250
        assert N8N_MONITORING in payload["features"]
