"""Payment adapters for billing and subscription management."""

from .razorpay_adapter import (
    RazorpayAdapter,
    RazorpayAPIError,
    RazorpayAuthError,
    RazorpayError,
    RazorpayTimeoutError,
    RazorpayWebhookError,
    create_razorpay_adapter,
    subscription_from_api_response,
)

__all__ = [
    "RazorpayAdapter",
    "RazorpayError",
    "RazorpayAPIError",
    "RazorpayTimeoutError",
    "RazorpayWebhookError",
    "RazorpayAuthError",
    "create_razorpay_adapter",
    "subscription_from_api_response",
]
