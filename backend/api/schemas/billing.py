"""
Billing and subscription request/response schemas.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class TierChoice(StrEnum):
    """Paid tiers a user can subscribe to."""

    BASIC = "BASIC"
    PRO = "PRO"


class RenewalPeriodChoice(StrEnum):
    """Billing intervals a user can choose."""

    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"


class PlanInfo(BaseModel):
    """Information about a subscription plan."""

    plan_id: str = Field(..., description="Gateway plan ID")
    tier: str = Field(..., description="Entitlement tier (BASIC, PRO)")
    renewal_period: str = Field(..., description="Billing interval (MONTHLY, ANNUAL)")
    name: str = Field(..., description="Display name of the plan")
    price_minor: int = Field(..., description="Price per cycle in minor currency units")
    price: float = Field(..., description="Price per cycle in major currency units")
    currency: str = Field(..., description="ISO currency code")


class PricingResponse(BaseModel):
    """Response containing all available plans."""

    plans: list[PlanInfo] = Field(..., description="List of all available plans")


class SubscriptionStatusResponse(BaseModel):
    """Current subscription status for a user."""

    user_id: str = Field(..., description="User ID")
    tier: str = Field(..., description="Current entitlement tier")
    has_active_subscription: bool = Field(..., description="Whether a paid subscription is active")
    plan: PlanInfo | None = Field(None, description="Current plan, if any")
    billing: dict[str, Any] | None = Field(None, description="Stored billing state")
    available_changes: list[PlanInfo] = Field(
        default_factory=list, description="Plans the user can change to"
    )


class CheckoutRequest(BaseModel):
    """Request to start a new subscription."""

    user_id: str = Field(..., min_length=1, max_length=255, description="User ID")
    tier: TierChoice = Field(..., description="Plan tier to subscribe to")
    renewal_period: RenewalPeriodChoice = Field(
        RenewalPeriodChoice.MONTHLY, description="Billing interval"
    )
    email: str | None = Field(None, max_length=255, description="Email for the confirmation")


class CheckoutResponse(BaseModel):
    """Response with the subscription payment link."""

    subscription_id: str = Field(..., description="Gateway subscription ID")
    payment_url: str | None = Field(None, description="Hosted payment page URL")
    plan: PlanInfo = Field(..., description="Plan being purchased")
    amount: float = Field(..., description="Amount due in major currency units")


class PlanChangeRequest(BaseModel):
    """Request to move to another plan."""

    user_id: str = Field(..., min_length=1, max_length=255, description="User ID")
    tier: TierChoice = Field(..., description="Target tier")
    renewal_period: RenewalPeriodChoice = Field(..., description="Target billing interval")


class PlanChangeResponse(BaseModel):
    """Outcome of an accepted plan change."""

    flow: str = Field(..., description="new_subscription, mandate_swap or in_place_update")
    change_type: str = Field(..., description="upgrade, downgrade or period_change")
    from_plan: PlanInfo | None = Field(None, description="Plan before the change")
    to_plan: PlanInfo = Field(..., description="Plan after the change")
    subscription_id: str = Field(..., description="Gateway subscription ID involved")
    previous_subscription_id: str | None = Field(None, description="Replaced subscription ID")
    amount_due: float = Field(0.0, description="Additional amount due, major units")
    refund_amount: float = Field(0.0, description="Amount refunded, major units")
    payment_url: str | None = Field(None, description="Subscription authentication URL")
    invoice_id: str | None = Field(None, description="Prorated invoice ID")
    invoice_url: str | None = Field(None, description="Prorated invoice payment URL")
    warnings: list[str] = Field(default_factory=list, description="Non-fatal follow-up failures")


class CancelRequest(BaseModel):
    """Request to cancel at the end of the current cycle."""

    user_id: str = Field(..., min_length=1, max_length=255, description="User ID")
    subscription_id: str | None = Field(None, description="Expected gateway subscription ID")


class SubscriptionCancelResponse(BaseModel):
    """Response after requesting cancellation."""

    subscription_id: str = Field(..., description="Gateway subscription ID")
    status: str = Field(..., description="Gateway status after the request")
    access_until: datetime | None = Field(None, description="End of the paid period")
    message: str = Field(..., description="Cancellation confirmation message")


class MandateLinkResponse(BaseModel):
    """Authentication link for a subscription awaiting its mandate."""

    subscription_id: str = Field(..., description="Gateway subscription ID")
    payment_url: str = Field(..., description="Hosted authentication URL")


class VerifyPaymentRequest(BaseModel):
    """Checkout callback fields to verify."""

    user_id: str = Field(..., min_length=1, max_length=255, description="User ID")
    payment_id: str = Field(..., description="razorpay_payment_id from the checkout")
    subscription_id: str = Field(..., description="razorpay_subscription_id from the checkout")
    signature: str = Field(..., description="razorpay_signature from the checkout")


class VerifyPaymentResponse(BaseModel):
    """Result of checkout signature verification."""

    verified: bool = Field(..., description="Whether the signature is valid")
    payment_id: str = Field(..., description="Payment ID")
    subscription_id: str = Field(..., description="Subscription ID")


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    status: str = Field("ok", description="Always ok once the signature is verified")
    result: str = Field(..., description="applied, ignored, dropped, error or duplicate")
