"""
Checkout, cancellation and status operations around the subscription record.

Like plan changes, none of these write entitlement: the gateway's webhooks
confirm every tier transition.
"""

import logging
from typing import Any, Optional

from core.billing_math import default_total_count, to_major_units
from core.domain.subscription import BillingPatch, RecordPatch, SubscriptionRecord
from core.interfaces.repositories import SubscriptionRecordRepository
from core.interfaces.services import PaymentGateway, PaymentGatewayError
from core.plans import PlanCatalog, PlanDescriptor

from .plan_change import Clock, subscription_notes, utc_now

logger = logging.getLogger(__name__)


class BillingServiceError(Exception):
    """Raised when a billing operation is rejected."""

    INVALID_PLAN = "invalid_plan"
    ALREADY_SUBSCRIBED = "already_subscribed"
    NO_SUBSCRIPTION = "no_subscription"
    ALREADY_CANCELLED = "already_cancelled"
    SUBSCRIPTION_MISMATCH = "subscription_mismatch"
    NO_PENDING_MANDATE = "no_pending_mandate"
    INVALID_SIGNATURE = "invalid_signature"
    GATEWAY_ERROR = "gateway_error"

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class BillingService:
    """Service for subscription checkout and management."""

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

    def _current_plan(self, record: Optional[SubscriptionRecord]) -> Optional[PlanDescriptor]:
        if record is None or record.billing is None or not record.tier.is_paid:
            return None
        return self.catalog.for_plan(record.tier, record.billing.renewal_period)

    async def create_checkout(
        self,
        user_id: str,
        tier: str,
        renewal_period: str,
        email: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Start a new subscription for a user without an active one.

        Returns:
            Dict with subscription_id, payment_url, plan and amount
        """
        plan = self.catalog.for_plan(tier, renewal_period)
        if plan is None:
            raise BillingServiceError(
                BillingServiceError.INVALID_PLAN, f"Unknown plan: {tier}/{renewal_period}"
            )

        record = await self.repository.get_by_user(user_id)
        if record is not None and record.has_active_entitlement:
            raise BillingServiceError(
                BillingServiceError.ALREADY_SUBSCRIBED,
                "User already has an active subscription; use change-plan instead",
            )

        notes = subscription_notes(user_id, plan)
        if email:
            notes["email"] = email

        try:
            subscription = await self.gateway.create_subscription(
                plan_id=plan.plan_id,
                total_count=default_total_count(plan.renewal_period),
                notes=notes,
                customer_notify=True,
            )
        except PaymentGatewayError as e:
            logger.error("Checkout subscription creation failed for user %s: %s", user_id, e)
            raise BillingServiceError(
                BillingServiceError.GATEWAY_ERROR, "Failed to create subscription"
            ) from e

        if record is not None:
            await self.repository.update(
                user_id,
                RecordPatch(
                    billing=BillingPatch(
                        pending_subscription_id=subscription.id,
                        target_plan_id=plan.plan_id,
                        transition_at=self.clock(),
                    )
                ),
            )

        logger.info("Checkout created for user %s: %s on %s", user_id, subscription.id, plan.plan_id)
        return {
            "subscription_id": subscription.id,
            "payment_url": subscription.short_url,
            "plan": plan,
            "amount": to_major_units(plan.price_minor),
        }

    async def cancel_subscription(
        self, user_id: str, subscription_id: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Cancel the user's subscription at the end of the current cycle.

        The record keeps its entitlement; the gateway's cancellation webhook
        marks it cancelled.
        """
        record = await self.repository.get_by_user(user_id)
        billing = record.billing if record is not None else None
        if billing is None or (not billing.gateway_subscription_id and not billing.is_cancelled):
            raise BillingServiceError(
                BillingServiceError.NO_SUBSCRIPTION, "No active subscription found"
            )

        if billing.is_cancelled:
            raise BillingServiceError(
                BillingServiceError.ALREADY_CANCELLED, "Subscription is already cancelled"
            )

        if subscription_id and subscription_id != billing.gateway_subscription_id:
            raise BillingServiceError(
                BillingServiceError.SUBSCRIPTION_MISMATCH,
                "Subscription id does not match the active subscription",
            )

        try:
            cancelled = await self.gateway.cancel_subscription(
                billing.gateway_subscription_id, at_cycle_end=True
            )
        except PaymentGatewayError as e:
            logger.error(
                "Cancelling %s for user %s failed: %s", billing.gateway_subscription_id, user_id, e
            )
            raise BillingServiceError(
                BillingServiceError.GATEWAY_ERROR, "Failed to cancel subscription"
            ) from e

        logger.info("Cancellation at cycle end requested for user %s (%s)", user_id, cancelled.id)
        return {
            "subscription_id": cancelled.id,
            "status": cancelled.status,
            "access_until": billing.current_period_end,
        }

    async def get_billing_status(self, user_id: str) -> dict[str, Any]:
        record = await self.repository.get_by_user(user_id)
        current = self._current_plan(record)
        billing = record.billing if record is not None else None
        return {
            "user_id": user_id,
            "tier": record.tier.value if record is not None else "NONE",
            "has_active_subscription": bool(record and record.has_active_entitlement),
            "plan": current,
            "billing": billing.to_dict() if billing is not None else None,
            "available_changes": self.catalog.available_changes(current),
        }

    async def get_mandate_link(self, user_id: str) -> dict[str, Any]:
        """Return the authentication link of a subscription awaiting its mandate."""
        record = await self.repository.get_by_user(user_id)
        billing = record.billing if record is not None else None

        subscription_id = None
        if billing is not None:
            if billing.pending_subscription_id:
                subscription_id = billing.pending_subscription_id
            elif billing.upgrade_in_progress:
                subscription_id = billing.gateway_subscription_id

        if not subscription_id:
            raise BillingServiceError(
                BillingServiceError.NO_PENDING_MANDATE, "No subscription awaiting authentication"
            )

        try:
            subscription = await self.gateway.fetch_subscription(subscription_id)
        except PaymentGatewayError as e:
            logger.error("Fetching %s failed: %s", subscription_id, e)
            raise BillingServiceError(
                BillingServiceError.GATEWAY_ERROR, "Failed to fetch subscription"
            ) from e

        if subscription.status != "created" or not subscription.short_url:
            raise BillingServiceError(
                BillingServiceError.NO_PENDING_MANDATE,
                f"Subscription is {subscription.status}; no authentication needed",
            )

        return {"subscription_id": subscription.id, "payment_url": subscription.short_url}

    def verify_checkout_payment(
        self,
        user_id: str,
        payment_id: str,
        subscription_id: str,
        signature: str,
    ) -> dict[str, Any]:
        """Check the checkout callback signature. Entitlement follows by webhook."""
        if not self.gateway.verify_payment_signature(payment_id, subscription_id, signature):
            logger.warning("Invalid checkout signature for user %s (%s)", user_id, payment_id)
            raise BillingServiceError(
                BillingServiceError.INVALID_SIGNATURE, "Payment signature verification failed"
            )

        logger.info("Checkout payment %s verified for user %s", payment_id, user_id)
        return {"verified": True, "payment_id": payment_id, "subscription_id": subscription_id}
