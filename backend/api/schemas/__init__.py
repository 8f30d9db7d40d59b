"""
API request and response schemas.
"""

from .billing import (
    CancelRequest,
    CheckoutRequest,
    CheckoutResponse,
    MandateLinkResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    PlanInfo,
    PricingResponse,
    SubscriptionCancelResponse,
    SubscriptionStatusResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

__all__ = [
    "PlanInfo",
    "PricingResponse",
    "SubscriptionStatusResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "PlanChangeRequest",
    "PlanChangeResponse",
    "CancelRequest",
    "SubscriptionCancelResponse",
    "MandateLinkResponse",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",
    "WebhookResponse",
]
