"""Gateway webhook events, reduced to the fields reconciliation consumes."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from .subscription import to_datetime

USER_ID_PREFIX = "USER#"


class GatewayEventType(StrEnum):
    """Razorpay webhook event types handled by reconciliation."""

    SUBSCRIPTION_AUTHENTICATED = "subscription.authenticated"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_COMPLETED = "subscription.completed"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_HALTED = "subscription.halted"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"


def _notes(value: Any) -> dict[str, Any]:
    # The gateway sends an empty list instead of an empty object
    return value if isinstance(value, dict) else {}


def parse_user_id(notes: dict[str, Any]) -> Optional[str]:
    """Extract the user id carried in subscription or payment notes."""
    raw = notes.get("userId") or notes.get("user_id")
    if not raw or not isinstance(raw, str):
        return None
    if raw.startswith(USER_ID_PREFIX):
        raw = raw[len(USER_ID_PREFIX):]
    return raw.strip() or None


@dataclass
class SubscriptionEntity:
    """Subscription entity embedded in a webhook payload."""

    id: str
    plan_id: Optional[str] = None
    status: Optional[str] = None
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    start_at: Optional[datetime] = None
    charge_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    payment_method: Optional[str] = None
    short_url: Optional[str] = None
    notes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entity(cls, entity: dict[str, Any]) -> "SubscriptionEntity":
        return cls(
            id=str(entity.get("id") or ""),
            plan_id=entity.get("plan_id"),
            status=entity.get("status"),
            current_start=to_datetime(entity.get("current_start")),
            current_end=to_datetime(entity.get("current_end")),
            start_at=to_datetime(entity.get("start_at")),
            charge_at=to_datetime(entity.get("charge_at")),
            ended_at=to_datetime(entity.get("ended_at")),
            customer_id=entity.get("customer_id"),
            payment_method=entity.get("payment_method"),
            short_url=entity.get("short_url"),
            notes=_notes(entity.get("notes")),
        )


@dataclass
class PaymentEntity:
    """Payment entity embedded in a webhook payload."""

    id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    method: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    notes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entity(cls, entity: dict[str, Any]) -> "PaymentEntity":
        amount = entity.get("amount")
        return cls(
            id=str(entity.get("id") or ""),
            amount=int(amount) if isinstance(amount, (int, float)) else None,
            currency=entity.get("currency"),
            status=entity.get("status"),
            method=entity.get("method"),
            order_id=entity.get("order_id"),
            invoice_id=entity.get("invoice_id"),
            email=entity.get("email"),
            created_at=to_datetime(entity.get("created_at")),
            notes=_notes(entity.get("notes")),
        )


@dataclass
class GatewayEvent:
    """A verified webhook delivery."""

    event_type: str
    event_id: Optional[str] = None
    created_at: Optional[datetime] = None
    subscription: Optional[SubscriptionEntity] = None
    payment: Optional[PaymentEntity] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        """User id from subscription notes, falling back to payment notes."""
        if self.subscription is not None:
            user_id = parse_user_id(self.subscription.notes)
            if user_id:
                return user_id
        if self.payment is not None:
            return parse_user_id(self.payment.notes)
        return None

    @property
    def customer_email(self) -> Optional[str]:
        if self.payment is not None and self.payment.email:
            return self.payment.email
        if self.subscription is not None:
            email = self.subscription.notes.get("email")
            if isinstance(email, str) and email:
                return email
        return None

    @classmethod
    def from_webhook_payload(
        cls, payload: dict[str, Any], event_id: Optional[str] = None
    ) -> "GatewayEvent":
        """
        Build an event from a webhook body.

        Raises:
            ValueError: If the body is not an object or has no event type
        """
        if not isinstance(payload, dict):
            raise ValueError("Webhook payload must be a JSON object")

        event_type = payload.get("event")
        if not event_type or not isinstance(event_type, str):
            raise ValueError("Webhook payload missing event type")

        body = payload.get("payload") or {}
        if not isinstance(body, dict):
            body = {}

        subscription = None
        subscription_entity = (body.get("subscription") or {}).get("entity")
        if isinstance(subscription_entity, dict) and subscription_entity.get("id"):
            subscription = SubscriptionEntity.from_entity(subscription_entity)

        payment = None
        payment_entity = (body.get("payment") or {}).get("entity")
        if isinstance(payment_entity, dict) and payment_entity.get("id"):
            payment = PaymentEntity.from_entity(payment_entity)

        return cls(
            event_type=event_type,
            event_id=event_id or payload.get("id"),
            created_at=to_datetime(payload.get("created_at")),
            subscription=subscription,
            payment=payment,
            raw=payload,
        )
