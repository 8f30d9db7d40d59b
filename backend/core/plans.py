"""
Plan configuration for subscription tiers.

This module is the single source of truth for plan prices and the
plan-change transition table. It lives in core/ so both service and API
layers can import from it without creating circular dependencies.

Prices are in minor currency units (paise).
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .domain.subscription import RenewalPeriod, Tier

CURRENCY = "INR"

# Gateway plan ids used when none are configured
DEFAULT_PLAN_IDS = {
    (Tier.BASIC, RenewalPeriod.MONTHLY): "plan_R7G6hu5lBKJdpl",
    (Tier.PRO, RenewalPeriod.MONTHLY): "plan_R7G7VNbsYt55dG",
    (Tier.BASIC, RenewalPeriod.ANNUAL): "plan_R7G8xw8x4WDSoM",
    (Tier.PRO, RenewalPeriod.ANNUAL): "plan_R7G9duBj5HV9Oz",
}

# Plan configuration with display names and prices
PLANS = {
    (Tier.BASIC, RenewalPeriod.MONTHLY): {"name": "Basic Monthly", "price_minor": 8900},
    (Tier.PRO, RenewalPeriod.MONTHLY): {"name": "Pro Monthly", "price_minor": 12900},
    (Tier.BASIC, RenewalPeriod.ANNUAL): {"name": "Basic Yearly", "price_minor": 74900},
    (Tier.PRO, RenewalPeriod.ANNUAL): {"name": "Pro Yearly", "price_minor": 108900},
}

# Ordering used to classify a change as an upgrade or a downgrade
TIER_RANK = {Tier.NONE: 0, Tier.TRIAL: 0, Tier.BASIC: 1, Tier.PRO: 2}


@dataclass(frozen=True)
class PlanDescriptor:
    """A purchasable plan."""

    plan_id: str
    tier: Tier
    renewal_period: RenewalPeriod
    price_minor: int
    name: str

    @property
    def key(self) -> tuple[Tier, RenewalPeriod]:
        return (self.tier, self.renewal_period)

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "tier": self.tier.value,
            "renewalPeriod": self.renewal_period.value,
            "amount": self.price_minor,
            "name": self.name,
        }


class PlanCatalog:
    """
    Read-only lookup of plans by gateway plan id or by (tier, period).

    Built once at start-up and shared afterwards.
    """

    def __init__(self, plans: Iterable[PlanDescriptor]):
        self._by_id: dict[str, PlanDescriptor] = {}
        self._by_key: dict[tuple[Tier, RenewalPeriod], PlanDescriptor] = {}
        for plan in plans:
            if plan.plan_id in self._by_id:
                raise ValueError(f"Duplicate plan id: {plan.plan_id}")
            self._by_id[plan.plan_id] = plan
            self._by_key[plan.key] = plan

    @classmethod
    def from_plan_ids(
        cls, plan_ids: Optional[dict[tuple[Tier, RenewalPeriod], Optional[str]]] = None
    ) -> "PlanCatalog":
        """Build the catalog, overriding default gateway plan ids where given."""
        configured = dict(DEFAULT_PLAN_IDS)
        for key, plan_id in (plan_ids or {}).items():
            if plan_id:
                configured[key] = plan_id
        return cls(
            PlanDescriptor(
                plan_id=configured[key],
                tier=key[0],
                renewal_period=key[1],
                price_minor=data["price_minor"],
                name=data["name"],
            )
            for key, data in PLANS.items()
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "PlanCatalog":
        return cls.from_plan_ids(
            {
                (Tier.BASIC, RenewalPeriod.MONTHLY): settings.razorpay_plan_basic_monthly,
                (Tier.PRO, RenewalPeriod.MONTHLY): settings.razorpay_plan_pro_monthly,
                (Tier.BASIC, RenewalPeriod.ANNUAL): settings.razorpay_plan_basic_yearly,
                (Tier.PRO, RenewalPeriod.ANNUAL): settings.razorpay_plan_pro_yearly,
            }
        )

    def get(self, plan_id: Optional[str]) -> Optional[PlanDescriptor]:
        if not plan_id:
            return None
        return self._by_id.get(plan_id)

    def for_plan(self, tier: Any, renewal_period: Any) -> Optional[PlanDescriptor]:
        """Resolve a (tier, renewal period) pair; unknown values resolve to None."""
        try:
            key = (Tier(tier), RenewalPeriod(renewal_period))
        except ValueError:
            return None
        return self._by_key.get(key)

    def all(self) -> list[PlanDescriptor]:
        return list(self._by_id.values())

    def is_valid_transition(self, current: PlanDescriptor, target: PlanDescriptor) -> bool:
        """Every change between two distinct known plans is allowed."""
        return (
            current.plan_id in self._by_id
            and target.plan_id in self._by_id
            and current.plan_id != target.plan_id
        )

    def available_changes(self, current: Optional[PlanDescriptor]) -> list[PlanDescriptor]:
        """Plans reachable from the current plan (all plans when it is unknown)."""
        if current is None:
            return self.all()
        return [plan for plan in self._by_id.values() if self.is_valid_transition(current, plan)]


def classify_change(current: Optional[PlanDescriptor], target: PlanDescriptor) -> str:
    """Return "upgrade", "downgrade" or "period_change"."""
    if current is None:
        return "upgrade"
    current_rank = TIER_RANK[current.tier]
    target_rank = TIER_RANK[target.tier]
    if target_rank > current_rank:
        return "upgrade"
    if target_rank < current_rank:
        return "downgrade"
    return "period_change"
