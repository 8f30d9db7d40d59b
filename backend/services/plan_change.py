"""
Plan-change decision engine.

Validates a requested plan change against the user's subscription record,
picks the gateway flow that fits the payment method, performs the gateway
calls and writes the optimistic part of the change. Tier transitions are
left to the webhook reconciler, which is the only writer of confirmed state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from core.billing_math import (
    cycle_length_days,
    days_remaining,
    days_used,
    default_total_count,
    prorate,
    refund_for_unused_period,
    remaining_billing_cycles,
    to_major_units,
)
from core.domain.events import USER_ID_PREFIX
from core.domain.subscription import (
    DELETE,
    BillingPatch,
    BillingState,
    RecordPatch,
    StaleRecordError,
    SubscriptionRecord,
)
from core.interfaces.repositories import SubscriptionRecordRepository
from core.interfaces.services import PaymentGateway, PaymentGatewayError
from core.plans import PlanCatalog, PlanDescriptor, classify_change

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def subscription_notes(
    user_id: str,
    plan: PlanDescriptor,
    is_upgrade: bool = False,
    old_subscription_id: Optional[str] = None,
) -> dict[str, Any]:
    """Metadata attached to gateway subscriptions and echoed back in webhooks."""
    return {
        "userId": f"{USER_ID_PREFIX}{user_id}",
        "tier": plan.tier.value,
        "renewalPeriod": plan.renewal_period.value,
        "planId": plan.plan_id,
        "isUpgrade": is_upgrade,
        "oldSubscriptionId": old_subscription_id or "",
    }


class ChangeFlow(str, Enum):
    """How a plan change is carried out at the gateway."""

    NEW_SUBSCRIPTION = "new_subscription"
    MANDATE_SWAP = "mandate_swap"
    IN_PLACE_UPDATE = "in_place_update"


# Exceptions
class PlanChangeError(Exception):
    """Base exception for rejected or failed plan changes."""

    kind = "plan_change_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidPlanError(PlanChangeError):
    """The requested tier/period does not resolve to a known plan."""

    kind = "invalid_plan"


class NoSubscriptionError(PlanChangeError):
    """The user has no subscription record."""

    kind = "no_subscription"


class NoActiveSubscriptionError(PlanChangeError):
    """The user's record carries no active paid entitlement."""

    kind = "no_active_subscription"


class AlreadyOnPlanError(PlanChangeError):
    """The requested plan is the current plan."""

    kind = "already_on_plan"


class InvalidTransitionError(PlanChangeError):
    """The requested change is not in the transition table."""

    kind = "invalid_transition"


class ConcurrentChangeError(PlanChangeError):
    """The subscription changed at the gateway while the change was being made."""

    kind = "concurrent_change"


class GatewayStepError(PlanChangeError):
    """The primary gateway call of a flow failed; nothing was written."""

    kind = "gateway_error"

    def __init__(self, step: str, cause: Exception):
        super().__init__(f"Gateway step '{step}' failed", {"step": step})
        self.step = step
        self.cause = cause


@dataclass
class ChangeOutcome:
    """Result of an accepted plan change."""

    flow: ChangeFlow
    change_type: str
    from_plan: Optional[PlanDescriptor]
    to_plan: PlanDescriptor
    subscription_id: str
    previous_subscription_id: Optional[str] = None
    # Major currency units, for display
    amount_due: float = 0.0
    refund_amount: float = 0.0
    payment_url: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_url: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow": self.flow.value,
            "change_type": self.change_type,
            "from_plan": self.from_plan.to_dict() if self.from_plan else None,
            "to_plan": self.to_plan.to_dict(),
            "subscription_id": self.subscription_id,
            "previous_subscription_id": self.previous_subscription_id,
            "amount_due": self.amount_due,
            "refund_amount": self.refund_amount,
            "payment_url": self.payment_url,
            "invoice_id": self.invoice_id,
            "invoice_url": self.invoice_url,
            "warnings": list(self.warnings),
        }


class PlanChangeService:
    """Handles user-initiated plan changes."""

    def __init__(
        self,
        repository: SubscriptionRecordRepository,
        gateway: PaymentGateway,
        catalog: PlanCatalog,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.gateway = gateway
        self.catalog = catalog
        self.clock = clock

    async def request_plan_change(
        self,
        user_id: str,
        target_tier: str,
        target_renewal_period: str,
    ) -> ChangeOutcome:
        """
        Move a user to another plan.

        Validation failures raise before any gateway call or record write.
        A failed primary gateway call raises GatewayStepError and writes
        nothing; failed follow-up calls are reported in the outcome's
        warnings while the primary change stands.

        Raises:
            PlanChangeError: One of its subclasses, naming the rejection
        """
        target = self.catalog.for_plan(target_tier, target_renewal_period)
        if target is None:
            raise InvalidPlanError(
                f"Unknown plan: {target_tier}/{target_renewal_period}",
                {"tier": target_tier, "renewal_period": target_renewal_period},
            )

        record = await self.repository.get_by_user(user_id)
        if record is None:
            raise NoSubscriptionError(f"No subscription found for user {user_id}")

        if not record.has_active_entitlement:
            raise NoActiveSubscriptionError(
                "No active subscription to change",
                {"tier": record.tier.value},
            )

        billing = record.billing or BillingState()
        current = self._current_plan(record)

        if current is not None and current.plan_id == target.plan_id:
            raise AlreadyOnPlanError(
                f"Already on {target.name}",
                {"plan_id": target.plan_id},
            )

        if current is not None and not self.catalog.is_valid_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot change from {current.name} to {target.name}",
                {"available": [plan.to_dict() for plan in self.catalog.available_changes(current)]},
            )

        now = self.clock()
        change_type = classify_change(current, target)

        logger.info(
            "Plan change requested for user %s: %s -> %s (%s)",
            user_id,
            current.plan_id if current else None,
            target.plan_id,
            change_type,
        )

        if not billing.gateway_subscription_id:
            return await self._create_new_subscription(user_id, current, target, change_type, now)

        if billing.payment_method is not None and billing.payment_method.is_mandate:
            return await self._swap_mandate(user_id, billing, current, target, change_type, now)

        return await self._update_in_place(user_id, billing, current, target, change_type, now)

    def _current_plan(self, record: SubscriptionRecord) -> Optional[PlanDescriptor]:
        if not record.tier.is_paid or record.billing is None:
            return None
        return self.catalog.for_plan(record.tier, record.billing.renewal_period)

    async def _create_new_subscription(
        self,
        user_id: str,
        current: Optional[PlanDescriptor],
        target: PlanDescriptor,
        change_type: str,
        now: datetime,
    ) -> ChangeOutcome:
        try:
            subscription = await self.gateway.create_subscription(
                plan_id=target.plan_id,
                total_count=default_total_count(target.renewal_period),
                notes=subscription_notes(user_id, target),
                customer_notify=True,
            )
        except PaymentGatewayError as e:
            logger.error("Subscription creation failed for user %s: %s", user_id, e)
            raise GatewayStepError("create_subscription", e) from e

        # Activation is confirmed by webhook; only remember what is pending
        await self.repository.update(
            user_id,
            RecordPatch(
                billing=BillingPatch(
                    upgrade_in_progress=False,
                    pending_subscription_id=subscription.id,
                    target_plan_id=target.plan_id,
                    transition_at=now,
                )
            ),
        )

        return ChangeOutcome(
            flow=ChangeFlow.NEW_SUBSCRIPTION,
            change_type=change_type,
            from_plan=current,
            to_plan=target,
            subscription_id=subscription.id,
            amount_due=to_major_units(target.price_minor),
            payment_url=subscription.short_url,
        )

    def _unused_credit(
        self,
        current: Optional[PlanDescriptor],
        billing: BillingState,
        now: datetime,
    ) -> int:
        """Value of the unused part of the current paid cycle, in minor units."""
        if current is None or billing.current_period_end is None:
            return 0
        if days_remaining(billing.current_period_end, now) <= 0:
            return 0
        cycle = cycle_length_days(current.renewal_period)
        period_start = billing.current_period_start or (
            billing.current_period_end - timedelta(days=cycle)
        )
        return refund_for_unused_period(current.price_minor, days_used(period_start, now), cycle)

    async def _swap_mandate(
        self,
        user_id: str,
        billing: BillingState,
        current: Optional[PlanDescriptor],
        target: PlanDescriptor,
        change_type: str,
        now: datetime,
    ) -> ChangeOutcome:
        """
        Replace a mandate-backed subscription with a new one.

        When credit is owed the new subscription's first cycle is billed by a
        discounted one-off invoice and the mandate starts charging one cycle
        later; credit beyond the target price is refunded.
        """
        old_id = billing.gateway_subscription_id
        credit = self._unused_credit(current, billing, now)
        deferred_start = (
            now + timedelta(days=cycle_length_days(target.renewal_period)) if credit > 0 else None
        )

        try:
            subscription = await self.gateway.create_subscription(
                plan_id=target.plan_id,
                total_count=default_total_count(target.renewal_period),
                notes=subscription_notes(user_id, target, is_upgrade=True, old_subscription_id=old_id),
                customer_notify=True,
                start_at=deferred_start,
            )
        except PaymentGatewayError as e:
            logger.error("Replacement subscription creation failed for user %s: %s", user_id, e)
            raise GatewayStepError("create_subscription", e) from e

        # The old subscription must read as superseded before it is cancelled
        try:
            await self.repository.update(
                user_id,
                RecordPatch(
                    guard_subscription_id=old_id,
                    billing=BillingPatch(
                        superseded_subscription_id=old_id,
                        pending_subscription_id=subscription.id,
                    ),
                ),
            )
        except StaleRecordError:
            logger.warning(
                "Subscription %s changed during plan change for user %s; cancelling %s",
                old_id,
                user_id,
                subscription.id,
            )
            try:
                await self.gateway.cancel_subscription(subscription.id, at_cycle_end=False)
            except PaymentGatewayError as e:
                logger.error("Cancelling unused subscription %s failed: %s", subscription.id, e)
            raise ConcurrentChangeError(
                "Subscription changed while the plan change was in progress",
                {"subscription_id": old_id},
            )

        warnings: list[str] = []

        cancelled = True
        try:
            await self.gateway.cancel_subscription(old_id, at_cycle_end=False)
        except PaymentGatewayError as e:
            cancelled = False
            logger.error("Cancelling superseded subscription %s failed: %s", old_id, e)
            warnings.append("cancel_subscription failed; the old subscription will be cancelled on activation")

        amount_due_minor = max(0, target.price_minor - credit) if credit > 0 else target.price_minor

        invoice = None
        if credit > 0 and amount_due_minor > 0:
            try:
                invoice = await self.gateway.create_invoice(
                    subscription_id=subscription.id,
                    amount_minor=amount_due_minor,
                    description=f"{target.name} (first cycle, prorated)",
                    customer_id=billing.gateway_customer_id,
                    notes={"userId": f"{USER_ID_PREFIX}{user_id}", "planId": target.plan_id},
                )
            except PaymentGatewayError as e:
                logger.error("Prorated invoice creation failed for user %s: %s", user_id, e)
                warnings.append("create_invoice failed; the first cycle will be charged at full price")

        refund_minor = max(0, credit - target.price_minor)
        refunded_minor = 0
        if refund_minor > 0:
            refunded_minor = await self._refund_excess_credit(
                user_id, billing, old_id, refund_minor, warnings
            )

        await self.repository.update(
            user_id,
            RecordPatch(
                billing=BillingPatch(
                    gateway_subscription_id=subscription.id,
                    target_plan_id=DELETE,
                    upgrade_in_progress=True,
                    transition_at=deferred_start or now,
                    pending_subscription_id=DELETE,
                    superseded_subscription_id=DELETE if cancelled else old_id,
                    prorated_amount=amount_due_minor if credit > 0 else DELETE,
                    prorated_invoice_id=invoice.id if invoice else DELETE,
                    prorated_paid=credit > 0 and amount_due_minor == 0,
                    prorated_paid_at=DELETE,
                )
            ),
        )

        logger.info(
            "Mandate swap for user %s: %s -> %s (credit=%d, due=%d, refund=%d)",
            user_id,
            old_id,
            subscription.id,
            credit,
            amount_due_minor,
            refunded_minor,
        )

        return ChangeOutcome(
            flow=ChangeFlow.MANDATE_SWAP,
            change_type=change_type,
            from_plan=current,
            to_plan=target,
            subscription_id=subscription.id,
            previous_subscription_id=old_id,
            amount_due=to_major_units(amount_due_minor),
            refund_amount=to_major_units(refunded_minor),
            payment_url=subscription.short_url,
            invoice_id=invoice.id if invoice else None,
            invoice_url=invoice.short_url if invoice else None,
            warnings=warnings,
        )

    async def _refund_excess_credit(
        self,
        user_id: str,
        billing: BillingState,
        old_subscription_id: str,
        amount_minor: int,
        warnings: list[str],
    ) -> int:
        """Refund credit the new plan cannot absorb. Returns the refunded amount."""
        payment_id = billing.last_payment_id
        try:
            if not payment_id:
                payments = await self.gateway.list_subscription_payments(old_subscription_id)
                captured = [p for p in payments if p.status == "captured"]
                payment_id = captured[0].id if captured else None

            if not payment_id:
                warnings.append("create_refund skipped; no captured payment found")
                return 0

            await self.gateway.create_refund(
                payment_id,
                amount_minor,
                notes={"userId": f"{USER_ID_PREFIX}{user_id}", "reason": "plan change credit"},
            )
            return amount_minor
        except PaymentGatewayError as e:
            logger.error("Refund of %d for user %s failed: %s", amount_minor, user_id, e)
            warnings.append("create_refund failed; the credit was not refunded")
            return 0

    async def _update_in_place(
        self,
        user_id: str,
        billing: BillingState,
        current: Optional[PlanDescriptor],
        target: PlanDescriptor,
        change_type: str,
        now: datetime,
    ) -> ChangeOutcome:
        subscription_id = billing.gateway_subscription_id
        remaining_count = remaining_billing_cycles(
            billing.current_period_end, now, target.renewal_period
        )

        try:
            updated = await self.gateway.update_subscription(
                subscription_id,
                plan_id=target.plan_id,
                remaining_count=remaining_count,
                schedule_change_at="now",
            )
        except PaymentGatewayError as e:
            logger.error("In-place update of %s failed: %s", subscription_id, e)
            raise GatewayStepError("update_subscription", e) from e

        # The gateway prorates; this figure is informational only
        estimate = 0
        if current is not None and billing.current_period_end is not None:
            estimate = prorate(
                current.price_minor,
                target.price_minor,
                days_remaining(billing.current_period_end, now),
                cycle_length_days(current.renewal_period),
            )

        logger.info(
            "In-place update of %s for user %s to %s; awaiting subscription.updated",
            subscription_id,
            user_id,
            target.plan_id,
        )

        return ChangeOutcome(
            flow=ChangeFlow.IN_PLACE_UPDATE,
            change_type=change_type,
            from_plan=current,
            to_plan=target,
            subscription_id=updated.id or subscription_id,
            amount_due=to_major_units(estimate),
            payment_url=updated.short_url,
        )
