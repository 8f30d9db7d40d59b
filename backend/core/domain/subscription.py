"""Subscription record domain entities."""
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Tier(str, Enum):
    """Entitlement tiers. NONE means no paid entitlement."""
    NONE = "NONE"
    BASIC = "BASIC"
    PRO = "PRO"
    TRIAL = "TRIAL"

    @property
    def is_paid(self) -> bool:
        return self in (Tier.BASIC, Tier.PRO)


class RenewalPeriod(str, Enum):
    """Billing interval options."""
    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"


class PaymentMethod(str, Enum):
    """Payment instrument behind a subscription."""
    UPI = "upi"
    CARD = "card"
    NETBANKING = "netbanking"
    WALLET = "wallet"

    @property
    def is_mandate(self) -> bool:
        # Recurring-debit mandates cannot be modified in place
        return self == PaymentMethod.UPI


class PaymentStatus(str, Enum):
    """Outcome of the most recent payment."""
    PAID = "PAID"
    FAILED = "FAILED"
    PENDING = "PENDING"


class BillingStatus(str, Enum):
    """Explicit subscription status stored on the record."""
    ACTIVE = "ACTIVE"
    HALTED = "HALTED"
    CANCELLED = "CANCELLED"


class _Sentinel:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False


# Field left untouched by a patch
UNSET: Any = _Sentinel("UNSET")
# Field removed from the stored record by a patch
DELETE: Any = _Sentinel("DELETE")


class RecordExistsError(Exception):
    """Raised when creating a record for a user who already has one."""

    pass


class StaleRecordError(Exception):
    """Raised when a guarded patch no longer matches the stored record."""

    pass


def to_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce a stored or gateway timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without a Z suffix) and
    Unix epoch seconds. Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_or_none(enum_cls, value):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


# Attribute name -> persisted key. The persisted keys are read by other
# layers (display, notifications) and must stay stable.
_BILLING_KEYS = {
    "renewal_period": "renewalPeriod",
    "current_period_start": "currentPeriodStart",
    "current_period_end": "currentPeriodEnd",
    "gateway_subscription_id": "gatewaySubscriptionId",
    "gateway_customer_id": "gatewayCustomerId",
    "payment_method": "paymentMethod",
    "last_payment_status": "lastPaymentStatus",
    "last_payment_at": "lastPaymentAt",
    "last_payment_id": "lastPaymentId",
    "status": "status",
    "status_reason": "statusReason",
    "status_changed_at": "statusChangedAt",
    "upgrade_in_progress": "upgradeInProgress",
    "target_plan_id": "targetPlanId",
    "transition_at": "transitionAt",
    "confirmation_sent": "confirmationSent",
    "pending_subscription_id": "pendingSubscriptionId",
    "superseded_subscription_id": "supersededSubscriptionId",
    "cancelled_subscription_id": "cancelledSubscriptionId",
    "prorated_amount": "proratedAmount",
    "prorated_invoice_id": "proratedInvoiceId",
    "prorated_paid": "proratedPaid",
    "prorated_paid_at": "proratedPaidAt",
    "mandate_authenticated_at": "mandateAuthenticatedAt",
}

_DATETIME_FIELDS = {
    "current_period_start",
    "current_period_end",
    "last_payment_at",
    "status_changed_at",
    "transition_at",
    "prorated_paid_at",
    "mandate_authenticated_at",
}

_ENUM_FIELDS = {
    "renewal_period": RenewalPeriod,
    "payment_method": PaymentMethod,
    "last_payment_status": PaymentStatus,
    "status": BillingStatus,
}


@dataclass
class BillingState:
    """Billing sub-document of a subscription record."""

    renewal_period: Optional[RenewalPeriod] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    gateway_subscription_id: Optional[str] = None
    gateway_customer_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    last_payment_status: Optional[PaymentStatus] = None
    last_payment_at: Optional[datetime] = None
    last_payment_id: Optional[str] = None
    status: Optional[BillingStatus] = None
    status_reason: Optional[str] = None
    status_changed_at: Optional[datetime] = None
    upgrade_in_progress: bool = False
    target_plan_id: Optional[str] = None
    transition_at: Optional[datetime] = None
    confirmation_sent: bool = False

    # Plan swap bookkeeping
    pending_subscription_id: Optional[str] = None
    superseded_subscription_id: Optional[str] = None
    cancelled_subscription_id: Optional[str] = None
    prorated_amount: Optional[int] = None
    prorated_invoice_id: Optional[str] = None
    prorated_paid: bool = False
    prorated_paid_at: Optional[datetime] = None
    mandate_authenticated_at: Optional[datetime] = None

    def __post_init__(self):
        for name, enum_cls in _ENUM_FIELDS.items():
            value = getattr(self, name)
            if value is not None and not isinstance(value, enum_cls):
                setattr(self, name, _enum_or_none(enum_cls, value))
        for name in _DATETIME_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, datetime):
                setattr(self, name, to_datetime(value))
        self.upgrade_in_progress = bool(self.upgrade_in_progress)
        self.confirmation_sent = bool(self.confirmation_sent)
        self.prorated_paid = bool(self.prorated_paid)

    @property
    def is_cancelled(self) -> bool:
        return self.status == BillingStatus.CANCELLED

    @property
    def is_halted(self) -> bool:
        return self.status == BillingStatus.HALTED

    def references(self, subscription_id: Optional[str]) -> bool:
        """Whether the record still tracks the given gateway subscription."""
        if not subscription_id:
            return False
        return subscription_id in (self.gateway_subscription_id, self.cancelled_subscription_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted camelCase layout, omitting empty fields."""
        data: dict[str, Any] = {}
        for name, key in _BILLING_KEYS.items():
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, datetime):
                value = _iso(value)
            elif isinstance(value, Enum):
                value = value.value
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "BillingState":
        """
        Load from the persisted layout.

        Older documents used presence-based fields (isCancelled,
        razorpaySubscriptionId, subscriptionEndDate, newSubscriptionId);
        those are mapped onto the explicit status and id fields here and
        nowhere else.
        """
        data = dict(data or {})
        kwargs = {name: data.get(key) for name, key in _BILLING_KEYS.items() if key in data}

        if "gateway_subscription_id" not in kwargs and data.get("razorpaySubscriptionId"):
            kwargs["gateway_subscription_id"] = data["razorpaySubscriptionId"]
        if "current_period_end" not in kwargs and data.get("subscriptionEndDate"):
            kwargs["current_period_end"] = data["subscriptionEndDate"]
        if "current_period_start" not in kwargs and data.get("subscriptionStartDate"):
            kwargs["current_period_start"] = data["subscriptionStartDate"]
        if "pending_subscription_id" not in kwargs and data.get("newSubscriptionId"):
            kwargs["pending_subscription_id"] = data["newSubscriptionId"]
        if "status" not in kwargs:
            if data.get("isCancelled"):
                kwargs["status"] = BillingStatus.CANCELLED
            elif kwargs.get("gateway_subscription_id"):
                kwargs["status"] = BillingStatus.ACTIVE

        return cls(**kwargs)


@dataclass
class SubscriptionRecord:
    """One subscription record per user."""

    user_id: str
    tier: Tier = Tier.NONE
    billing: Optional[BillingState] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.tier, Tier):
            self.tier = _enum_or_none(Tier, self.tier) or Tier.NONE
        if isinstance(self.billing, dict):
            self.billing = BillingState.from_dict(self.billing)

    @property
    def has_active_entitlement(self) -> bool:
        """Paid, not cancelled or halted, or still attached to a gateway subscription."""
        billing = self.billing
        if billing is not None and billing.gateway_subscription_id:
            return True
        if not self.tier.is_paid:
            return False
        return billing is not None and billing.status not in (
            BillingStatus.CANCELLED,
            BillingStatus.HALTED,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "tier": self.tier.value,
            "billing": self.billing.to_dict() if self.billing is not None else None,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class BillingPatch:
    """
    Field-scoped change to a BillingState.

    Fields left as UNSET are not touched; DELETE removes the stored value.
    """

    renewal_period: Any = UNSET
    current_period_start: Any = UNSET
    current_period_end: Any = UNSET
    gateway_subscription_id: Any = UNSET
    gateway_customer_id: Any = UNSET
    payment_method: Any = UNSET
    last_payment_status: Any = UNSET
    last_payment_at: Any = UNSET
    last_payment_id: Any = UNSET
    status: Any = UNSET
    status_reason: Any = UNSET
    status_changed_at: Any = UNSET
    upgrade_in_progress: Any = UNSET
    target_plan_id: Any = UNSET
    transition_at: Any = UNSET
    confirmation_sent: Any = UNSET
    pending_subscription_id: Any = UNSET
    superseded_subscription_id: Any = UNSET
    cancelled_subscription_id: Any = UNSET
    prorated_amount: Any = UNSET
    prorated_invoice_id: Any = UNSET
    prorated_paid: Any = UNSET
    prorated_paid_at: Any = UNSET
    mandate_authenticated_at: Any = UNSET

    def changes(self) -> dict[str, Any]:
        """Return only the fields this patch sets or deletes."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}

    def is_empty(self) -> bool:
        return not self.changes()

    def apply_to(self, billing: BillingState) -> BillingState:
        values = {
            name: (None if value is DELETE else value) for name, value in self.changes().items()
        }
        # Deleting a boolean flag resets it
        for flag in ("upgrade_in_progress", "confirmation_sent", "prorated_paid"):
            if flag in values and values[flag] is None:
                values[flag] = False
        updated = replace(billing, **values)
        return updated


@dataclass
class RecordPatch:
    """
    Partial update of a subscription record.

    guard_subscription_id makes the write conditional on the stored record
    still referencing that gateway subscription. monotonic_period drops a
    period change that would move current_period_end backward while the
    gateway subscription id stays the same.
    """

    tier: Any = UNSET
    billing: BillingPatch = field(default_factory=BillingPatch)
    guard_subscription_id: Optional[str] = None
    monotonic_period: bool = False

    def is_empty(self) -> bool:
        return self.tier is UNSET and self.billing.is_empty()

    def apply(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Return a new record with this patch merged onto the given one."""
        current = record.billing or BillingState()

        if self.guard_subscription_id is not None and not current.references(
            self.guard_subscription_id
        ):
            raise StaleRecordError(
                f"Record for user {record.user_id} no longer references "
                f"subscription {self.guard_subscription_id}"
            )

        billing = self.billing.apply_to(current)

        if (
            self.monotonic_period
            and current.current_period_end is not None
            and billing.current_period_end is not None
            and billing.gateway_subscription_id == current.gateway_subscription_id
            and billing.current_period_end < current.current_period_end
        ):
            billing = replace(
                billing,
                current_period_start=current.current_period_start,
                current_period_end=current.current_period_end,
            )

        tier = record.tier
        if self.tier is not UNSET:
            tier = Tier.NONE if self.tier is DELETE else Tier(self.tier)

        has_billing = record.billing is not None or not self.billing.is_empty()
        return replace(record, tier=tier, billing=billing if has_billing else None)
