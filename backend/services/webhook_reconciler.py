"""
Webhook reconciliation.

Applies verified gateway events to subscription records. Every handler
re-reads the record, writes only the fields it owns through a RecordPatch
and is safe to run twice with the same event. Processing failures are
logged and reported as a result value, never raised, so the transport can
always acknowledge the delivery.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from core.domain.events import GatewayEvent, GatewayEventType
from core.domain.subscription import (
    DELETE,
    UNSET,
    BillingPatch,
    BillingState,
    BillingStatus,
    PaymentMethod,
    PaymentStatus,
    RecordExistsError,
    RecordPatch,
    StaleRecordError,
    SubscriptionRecord,
    Tier,
)
from core.interfaces.repositories import SubscriptionRecordRepository
from core.interfaces.services import NotificationService, PaymentGateway, PaymentGatewayError
from core.plans import PlanCatalog

logger = logging.getLogger(__name__)


class ReconcileResult(str, Enum):
    """Outcome of applying one gateway event."""

    APPLIED = "applied"
    IGNORED = "ignored"
    DROPPED = "dropped"
    ERROR = "error"


def _payment_method(value: Optional[str]) -> Optional[PaymentMethod]:
    if not value:
        return None
    try:
        return PaymentMethod(value.lower())
    except ValueError:
        return None


def _or_unset(value):
    return UNSET if value is None else value


class SubscriptionReconciler:
    """State machine driven by gateway webhook events."""

    def __init__(
        self,
        repository: SubscriptionRecordRepository,
        gateway: PaymentGateway,
        notifier: NotificationService,
        catalog: PlanCatalog,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.gateway = gateway
        self.notifier = notifier
        self.catalog = catalog
        self.clock = clock
        self._handlers: dict[str, Callable[[GatewayEvent], Awaitable[ReconcileResult]]] = {
            GatewayEventType.SUBSCRIPTION_ACTIVATED: self._handle_activated,
            GatewayEventType.SUBSCRIPTION_AUTHENTICATED: self._handle_authenticated,
            GatewayEventType.SUBSCRIPTION_CHARGED: self._handle_recurring,
            GatewayEventType.SUBSCRIPTION_COMPLETED: self._handle_recurring,
            GatewayEventType.SUBSCRIPTION_RESUMED: self._handle_recurring,
            GatewayEventType.SUBSCRIPTION_UPDATED: self._handle_updated,
            GatewayEventType.SUBSCRIPTION_CANCELLED: self._handle_cancelled,
            GatewayEventType.SUBSCRIPTION_HALTED: self._handle_halted,
            GatewayEventType.PAYMENT_CAPTURED: self._handle_payment_captured,
            GatewayEventType.PAYMENT_FAILED: self._handle_payment_failed,
        }

    async def apply_gateway_event(
        self, payload: dict, event_id: Optional[str] = None
    ) -> ReconcileResult:
        """
        Apply one verified webhook payload.

        Args:
            payload: Parsed webhook body
            event_id: Delivery id from the transport, if any

        Returns:
            How the event was handled. Never raises.
        """
        try:
            event = GatewayEvent.from_webhook_payload(payload, event_id)
        except ValueError as e:
            logger.warning("Dropping malformed webhook payload: %s", e)
            return ReconcileResult.DROPPED

        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("Ignoring unhandled webhook event: %s", event.event_type)
            return ReconcileResult.IGNORED

        try:
            result = await handler(event)
        except StaleRecordError as e:
            logger.info("Ignoring stale %s event: %s", event.event_type, e)
            return ReconcileResult.IGNORED
        except Exception as e:
            logger.error(
                "Failed to apply %s event %s: %s",
                event.event_type,
                event.event_id,
                e,
                exc_info=True,
            )
            return ReconcileResult.ERROR

        logger.info(
            "Webhook %s processed: %s",
            event.event_type,
            result.value,
            extra={
                "event_type": event.event_type,
                "subscription_id": event.subscription.id if event.subscription else None,
            },
        )
        return result

    def _event_time(self, event: GatewayEvent) -> datetime:
        return event.created_at or self.clock()

    def _drop(self, event: GatewayEvent, reason: str) -> ReconcileResult:
        logger.warning("Dropping %s event %s: %s", event.event_type, event.event_id, reason)
        return ReconcileResult.DROPPED

    async def _load(self, event: GatewayEvent) -> Optional[SubscriptionRecord]:
        user_id = event.user_id
        if not user_id:
            return None
        return await self.repository.get_by_user(user_id)

    async def _write(self, user_id: str, patch: RecordPatch) -> ReconcileResult:
        if patch.is_empty():
            return ReconcileResult.IGNORED
        if await self.repository.update(user_id, patch) is None:
            logger.warning("Subscription record for user %s disappeared during update", user_id)
            return ReconcileResult.DROPPED
        return ReconcileResult.APPLIED

    async def _cancel_superseded(self, subscription_ids: list[str]) -> Optional[str]:
        """Cancel old gateway subscriptions. Returns the id that could not be cancelled."""
        failed = None
        for subscription_id in subscription_ids:
            try:
                await self.gateway.cancel_subscription(subscription_id, at_cycle_end=False)
                logger.info("Cancelled superseded subscription %s", subscription_id)
            except PaymentGatewayError as e:
                logger.error("Failed to cancel superseded subscription %s: %s", subscription_id, e)
                failed = subscription_id
        return failed

    @staticmethod
    def _superseded_ids(billing: BillingState, new_subscription_id: str) -> list[str]:
        ids = []
        for subscription_id in (billing.superseded_subscription_id, billing.gateway_subscription_id):
            if subscription_id and subscription_id != new_subscription_id and subscription_id not in ids:
                ids.append(subscription_id)
        return ids

    async def _handle_activated(self, event: GatewayEvent) -> ReconcileResult:
        sub = event.subscription
        user_id = event.user_id
        if sub is None or not user_id:
            return self._drop(event, "missing subscription or user reference")

        plan = self.catalog.get(sub.plan_id)
        if plan is None:
            return self._drop(event, f"unknown plan {sub.plan_id}")

        record = await self.repository.get_by_user(user_id)
        if record is None:
            try:
                await self.repository.create(SubscriptionRecord(user_id=user_id, billing=BillingState()))
            except RecordExistsError:
                logger.debug("Subscription record for user %s created concurrently", user_id)
            record = await self.repository.get_by_user(user_id)
            if record is None:
                return self._drop(event, f"no subscription record for user {user_id}")

        billing = record.billing or BillingState()
        now = self._event_time(event)

        is_transition = (
            sub.id == billing.pending_subscription_id
            or (billing.upgrade_in_progress and sub.id == billing.gateway_subscription_id)
            or (billing.target_plan_id is not None and billing.target_plan_id == plan.plan_id)
        )

        if sub.id != billing.gateway_subscription_id and not is_transition:
            if sub.id in (billing.superseded_subscription_id, billing.cancelled_subscription_id):
                logger.info("Ignoring activation of retired subscription %s", sub.id)
                return ReconcileResult.IGNORED
            if billing.gateway_subscription_id and billing.status == BillingStatus.ACTIVE:
                logger.info(
                    "Ignoring activation of %s; user %s is active on %s",
                    sub.id,
                    user_id,
                    billing.gateway_subscription_id,
                )
                return ReconcileResult.IGNORED

        superseded = UNSET
        if is_transition:
            old_ids = self._superseded_ids(billing, sub.id)
            if old_ids:
                failed = await self._cancel_superseded(old_ids)
                superseded = failed or DELETE

        # A new subscription lifetime after the previous one ended gets its own confirmation
        entitlement_ended = not record.tier.is_paid or billing.status in (
            BillingStatus.CANCELLED,
            BillingStatus.HALTED,
        )
        confirmation_sent = (
            False if sub.id != billing.gateway_subscription_id and entitlement_ended else UNSET
        )

        patch = RecordPatch(
            tier=plan.tier,
            monotonic_period=True,
            billing=BillingPatch(
                renewal_period=plan.renewal_period,
                current_period_start=_or_unset(sub.current_start),
                current_period_end=_or_unset(sub.current_end),
                gateway_subscription_id=sub.id,
                gateway_customer_id=_or_unset(sub.customer_id),
                payment_method=_or_unset(_payment_method(sub.payment_method)),
                status=BillingStatus.ACTIVE,
                status_reason="activated",
                status_changed_at=now,
                last_payment_status=PaymentStatus.PAID,
                last_payment_at=now,
                upgrade_in_progress=False,
                target_plan_id=DELETE,
                pending_subscription_id=DELETE,
                superseded_subscription_id=superseded,
                cancelled_subscription_id=(
                    UNSET if billing.cancelled_subscription_id in (None, sub.id) else DELETE
                ),
                confirmation_sent=confirmation_sent,
            ),
        )
        result = await self._write(user_id, patch)
        if result is not ReconcileResult.APPLIED:
            return result

        # Read before send; a duplicate send under a race is tolerated
        current = await self.repository.get_by_user(user_id)
        if current is not None and current.billing is not None and not current.billing.confirmation_sent:
            sent = await self.notifier.send_subscription_confirmation(
                user_id,
                event.customer_email,
                plan,
                current.billing.current_period_end,
            )
            if sent:
                await self.repository.update(
                    user_id, RecordPatch(billing=BillingPatch(confirmation_sent=True))
                )

        logger.info("Activated %s for user %s on %s", plan.plan_id, user_id, sub.id)
        return result

    async def _handle_authenticated(self, event: GatewayEvent) -> ReconcileResult:
        sub = event.subscription
        if sub is None or not event.user_id:
            return self._drop(event, "missing subscription or user reference")

        record = await self._load(event)
        if record is None:
            return self._drop(event, f"no subscription record for user {event.user_id}")

        billing = record.billing or BillingState()
        if sub.id != billing.pending_subscription_id and not billing.references(sub.id):
            logger.info("Ignoring authentication of untracked subscription %s", sub.id)
            return ReconcileResult.IGNORED

        now = self._event_time(event)
        changes = BillingPatch(
            payment_method=_or_unset(_payment_method(sub.payment_method)),
            gateway_customer_id=_or_unset(sub.customer_id),
            mandate_authenticated_at=now,
        )
        tier = UNSET

        replaces_existing = bool(
            billing.gateway_subscription_id and billing.gateway_subscription_id != sub.id
        )
        in_upgrade = (billing.upgrade_in_progress and sub.id == billing.gateway_subscription_id) or (
            sub.id == billing.pending_subscription_id and replaces_existing
        )

        if in_upgrade:
            old_ids = self._superseded_ids(billing, sub.id)
            if old_ids:
                failed = await self._cancel_superseded(old_ids)
                changes.superseded_subscription_id = failed or DELETE
            changes.gateway_subscription_id = sub.id
            changes.pending_subscription_id = DELETE

            # Credit covered the first cycle, so there is no invoice to wait for
            if billing.upgrade_in_progress and billing.prorated_paid and not billing.prorated_invoice_id:
                plan = self.catalog.get(sub.plan_id)
                if plan is not None:
                    tier = plan.tier
                    changes.renewal_period = plan.renewal_period
                    changes.current_period_start = now
                    changes.current_period_end = _or_unset(sub.start_at or sub.current_end)
                    changes.upgrade_in_progress = False
                    changes.target_plan_id = DELETE
                    changes.status = BillingStatus.ACTIVE
                    changes.status_reason = "upgrade_credited"
                    changes.status_changed_at = now

        return await self._write(event.user_id, RecordPatch(tier=tier, billing=changes))

    async def _handle_recurring(self, event: GatewayEvent) -> ReconcileResult:
        sub = event.subscription
        if sub is None or not event.user_id:
            return self._drop(event, "missing subscription or user reference")

        record = await self._load(event)
        if record is None:
            return self._drop(event, f"no subscription record for user {event.user_id}")

        billing = record.billing or BillingState()
        now = self._event_time(event)
        changes = BillingPatch(last_payment_status=PaymentStatus.PAID, last_payment_at=now)
        if event.payment is not None:
            changes.last_payment_id = event.payment.id

        # An ended subscription keeps no billing period
        ended = billing.status == BillingStatus.CANCELLED and record.tier == Tier.NONE
        if not ended:
            changes.current_period_start = _or_unset(sub.current_start)
            changes.current_period_end = _or_unset(sub.current_end)

        tier = UNSET
        if not ended and (event.event_type == GatewayEventType.SUBSCRIPTION_RESUMED or billing.is_halted):
            plan = self.catalog.get(sub.plan_id)
            if plan is not None:
                tier = plan.tier
                changes.renewal_period = plan.renewal_period
            changes.status = BillingStatus.ACTIVE
            changes.status_reason = event.event_type.split(".")[-1]
            changes.status_changed_at = now

        return await self._write(
            event.user_id,
            RecordPatch(
                tier=tier,
                billing=changes,
                guard_subscription_id=sub.id,
                monotonic_period=True,
            ),
        )

    async def _handle_updated(self, event: GatewayEvent) -> ReconcileResult:
        sub = event.subscription
        if sub is None or not event.user_id:
            return self._drop(event, "missing subscription or user reference")

        plan = self.catalog.get(sub.plan_id)
        if plan is None:
            return self._drop(event, f"unknown plan {sub.plan_id}")

        return await self._write(
            event.user_id,
            RecordPatch(
                tier=plan.tier,
                guard_subscription_id=sub.id,
                monotonic_period=True,
                billing=BillingPatch(
                    renewal_period=plan.renewal_period,
                    current_period_start=_or_unset(sub.current_start),
                    current_period_end=_or_unset(sub.current_end),
                    upgrade_in_progress=False,
                    target_plan_id=DELETE,
                ),
            ),
        )

    async def _handle_cancelled(self, event: GatewayEvent) -> ReconcileResult:
        sub = event.subscription
        if sub is None or not event.user_id:
            return self._drop(event, "missing subscription or user reference")

        record = await self._load(event)
        if record is None:
            return self._drop(event, f"no subscription record for user {event.user_id}")

        billing = record.billing or BillingState()

        # Cancellation of a replaced or abandoned subscription only clears bookkeeping
        if sub.id == billing.superseded_subscription_id:
            if sub.id == billing.gateway_subscription_id:
                # Mandate swap still in flight; it clears the marker itself
                logger.info("Ignoring cancellation of %s while it is being replaced", sub.id)
                return ReconcileResult.IGNORED
            return await self._write(
                event.user_id,
                RecordPatch(billing=BillingPatch(superseded_subscription_id=DELETE)),
            )
        if sub.id != billing.gateway_subscription_id:
            if sub.id == billing.pending_subscription_id:
                return await self._write(
                    event.user_id,
                    RecordPatch(
                        billing=BillingPatch(pending_subscription_id=DELETE, target_plan_id=DELETE)
                    ),
                )

        if not billing.references(sub.id):
            logger.info("Ignoring cancellation of untracked subscription %s", sub.id)
            return ReconcileResult.IGNORED

        now = self._event_time(event)
        clock_now = self.clock()
        ended = (sub.ended_at is not None and sub.ended_at <= clock_now) or (
            billing.current_period_end is None or billing.current_period_end <= clock_now
        )

        if ended:
            patch = RecordPatch(
                tier=Tier.NONE,
                guard_subscription_id=sub.id,
                billing=BillingPatch(
                    current_period_start=DELETE,
                    current_period_end=DELETE,
                    gateway_subscription_id=DELETE,
                    cancelled_subscription_id=sub.id,
                    status=BillingStatus.CANCELLED,
                    status_reason="ended",
                    status_changed_at=now,
                    upgrade_in_progress=False,
                    target_plan_id=DELETE,
                ),
            )
            logger.info("Subscription %s ended for user %s", sub.id, event.user_id)
        else:
            # Access continues until the stored period end
            patch = RecordPatch(
                guard_subscription_id=sub.id,
                billing=BillingPatch(
                    gateway_subscription_id=DELETE,
                    cancelled_subscription_id=sub.id,
                    status=BillingStatus.CANCELLED,
                    status_reason="cancelled",
                    status_changed_at=now,
                ),
            )
            logger.info(
                "Subscription %s cancelled for user %s; access until %s",
                sub.id,
                event.user_id,
                billing.current_period_end,
            )

        return await self._write(event.user_id, patch)

    async def _handle_halted(self, event: GatewayEvent) -> ReconcileResult:
        sub = event.subscription
        if sub is None or not event.user_id:
            return self._drop(event, "missing subscription or user reference")

        now = self._event_time(event)
        return await self._write(
            event.user_id,
            RecordPatch(
                tier=Tier.NONE,
                guard_subscription_id=sub.id,
                billing=BillingPatch(
                    status=BillingStatus.HALTED,
                    status_reason="halted",
                    status_changed_at=now,
                    last_payment_status=PaymentStatus.FAILED,
                ),
            ),
        )

    async def _handle_payment_failed(self, event: GatewayEvent) -> ReconcileResult:
        if event.payment is None or not event.user_id:
            return self._drop(event, "missing payment or user reference")

        now = self._event_time(event)
        return await self._write(
            event.user_id,
            RecordPatch(
                billing=BillingPatch(
                    last_payment_status=PaymentStatus.FAILED,
                    last_payment_at=now,
                )
            ),
        )

    async def _handle_payment_captured(self, event: GatewayEvent) -> ReconcileResult:
        payment = event.payment
        if payment is None or not event.user_id:
            return self._drop(event, "missing payment or user reference")

        record = await self._load(event)
        if record is None:
            return self._drop(event, f"no subscription record for user {event.user_id}")

        billing = record.billing or BillingState()
        if not (
            billing.upgrade_in_progress
            and payment.invoice_id
            and payment.invoice_id == billing.prorated_invoice_id
            and billing.gateway_subscription_id
        ):
            return ReconcileResult.IGNORED

        subscription = await self.gateway.fetch_subscription(billing.gateway_subscription_id)
        plan = self.catalog.get(subscription.plan_id)
        if plan is None:
            return self._drop(event, f"unknown plan {subscription.plan_id}")

        now = self._event_time(event)
        logger.info(
            "Prorated invoice %s paid; finalizing %s for user %s",
            payment.invoice_id,
            plan.plan_id,
            event.user_id,
        )
        return await self._write(
            event.user_id,
            RecordPatch(
                tier=plan.tier,
                guard_subscription_id=billing.gateway_subscription_id,
                billing=BillingPatch(
                    renewal_period=plan.renewal_period,
                    current_period_start=now,
                    current_period_end=_or_unset(subscription.start_at or subscription.current_end),
                    upgrade_in_progress=False,
                    target_plan_id=DELETE,
                    prorated_invoice_id=DELETE,
                    prorated_paid=True,
                    prorated_paid_at=now,
                    last_payment_status=PaymentStatus.PAID,
                    last_payment_at=now,
                    last_payment_id=payment.id,
                    status=BillingStatus.ACTIVE,
                    status_reason="prorated_invoice_paid",
                    status_changed_at=now,
                ),
            ),
        )
