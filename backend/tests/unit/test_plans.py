"""
Unit tests for the plan catalog.
"""

import pytest

from core.domain.subscription import RenewalPeriod, Tier
from core.plans import PlanCatalog, PlanDescriptor, classify_change


class TestPlanCatalog:
    """Tests for plan lookup."""

    def test_default_plans(self, catalog: PlanCatalog):
        assert len(catalog.all()) == 4
        basic = catalog.for_plan(Tier.BASIC, RenewalPeriod.MONTHLY)
        assert basic.plan_id == "plan_R7G6hu5lBKJdpl"
        assert basic.price_minor == 8900

    def test_lookup_by_plan_id(self, catalog: PlanCatalog):
        plan = catalog.get("plan_R7G9duBj5HV9Oz")
        assert plan.tier == Tier.PRO
        assert plan.renewal_period == RenewalPeriod.ANNUAL
        assert plan.price_minor == 108900

    def test_lookup_accepts_strings(self, catalog: PlanCatalog):
        assert catalog.for_plan("PRO", "MONTHLY").price_minor == 12900

    def test_unknown_values_resolve_to_none(self, catalog: PlanCatalog):
        assert catalog.get("plan_unknown") is None
        assert catalog.get(None) is None
        assert catalog.for_plan("ENTERPRISE", "MONTHLY") is None
        assert catalog.for_plan(Tier.NONE, RenewalPeriod.MONTHLY) is None
        assert catalog.for_plan(Tier.BASIC, "WEEKLY") is None

    def test_configured_plan_ids_override_defaults(self):
        catalog = PlanCatalog.from_plan_ids({(Tier.PRO, RenewalPeriod.MONTHLY): "plan_custom"})
        assert catalog.for_plan(Tier.PRO, RenewalPeriod.MONTHLY).plan_id == "plan_custom"
        assert catalog.get("plan_R7G7VNbsYt55dG") is None

    def test_empty_overrides_are_ignored(self):
        catalog = PlanCatalog.from_plan_ids({(Tier.PRO, RenewalPeriod.MONTHLY): None})
        assert catalog.for_plan(Tier.PRO, RenewalPeriod.MONTHLY).plan_id == "plan_R7G7VNbsYt55dG"

    def test_duplicate_plan_ids_rejected(self):
        plan = PlanDescriptor("plan_x", Tier.BASIC, RenewalPeriod.MONTHLY, 100, "X")
        with pytest.raises(ValueError):
            PlanCatalog([plan, plan])


class TestTransitions:
    """Tests for transition rules and change classification."""

    def test_every_other_plan_is_reachable(self, catalog: PlanCatalog):
        current = catalog.for_plan(Tier.BASIC, RenewalPeriod.MONTHLY)
        targets = catalog.available_changes(current)
        assert len(targets) == 3
        assert current not in targets

    def test_same_plan_is_not_a_transition(self, catalog: PlanCatalog):
        current = catalog.for_plan(Tier.PRO, RenewalPeriod.ANNUAL)
        assert not catalog.is_valid_transition(current, current)

    def test_unknown_current_plan_allows_all(self, catalog: PlanCatalog):
        assert len(catalog.available_changes(None)) == 4

    def test_classify_change(self, catalog: PlanCatalog):
        basic_monthly = catalog.for_plan(Tier.BASIC, RenewalPeriod.MONTHLY)
        basic_annual = catalog.for_plan(Tier.BASIC, RenewalPeriod.ANNUAL)
        pro_monthly = catalog.for_plan(Tier.PRO, RenewalPeriod.MONTHLY)

        assert classify_change(basic_monthly, pro_monthly) == "upgrade"
        assert classify_change(pro_monthly, basic_annual) == "downgrade"
        assert classify_change(basic_monthly, basic_annual) == "period_change"
        assert classify_change(None, pro_monthly) == "upgrade"

    def test_descriptor_to_dict(self, catalog: PlanCatalog):
        data = catalog.for_plan(Tier.PRO, RenewalPeriod.MONTHLY).to_dict()
        assert data == {
            "planId": "plan_R7G7VNbsYt55dG",
            "tier": "PRO",
            "renewalPeriod": "MONTHLY",
            "amount": 12900,
            "name": data["name"],
        }
