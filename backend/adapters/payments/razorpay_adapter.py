"""
Razorpay billing adapter for subscription management.

Provides integration with the Razorpay REST API for subscriptions, one-off
orders and invoices, refunds, and webhook/checkout signature verification.
"""

import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any

import httpx

from core.domain.subscription import to_datetime
from core.interfaces.services import (
    GatewayInvoice,
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    GatewaySubscription,
    PaymentGateway,
    PaymentGatewayError,
)
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

# Razorpay accepts at most 15 note keys of up to 256 characters each
MAX_NOTE_KEYS = 15
MAX_NOTE_LENGTH = 256


# Custom Exceptions
class RazorpayError(PaymentGatewayError):
    """Base exception for Razorpay adapter errors."""

    pass


class RazorpayAPIError(RazorpayError):
    """Raised when the Razorpay API returns an error or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None, error_code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RazorpayTimeoutError(RazorpayAPIError):
    """Raised when a Razorpay request exceeds its timeout."""

    pass


class RazorpayWebhookError(RazorpayError):
    """Raised when webhook verification or processing fails."""

    pass


class RazorpayAuthError(RazorpayError):
    """Raised when API credentials are missing or rejected."""

    pass


def _clean_notes(notes: dict[str, Any] | None) -> dict[str, str]:
    """Coerce notes to the string-only form Razorpay accepts."""
    cleaned: dict[str, str] = {}
    for key, value in (notes or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        cleaned[str(key)] = str(value)[:MAX_NOTE_LENGTH]
        if len(cleaned) >= MAX_NOTE_KEYS:
            break
    return cleaned


def _epoch(value: datetime) -> int:
    return int(value.timestamp())


def subscription_from_api_response(data: dict[str, Any]) -> GatewaySubscription:
    """Create a GatewaySubscription from a Razorpay subscription entity."""
    notes = data.get("notes")
    remaining = data.get("remaining_count")
    return GatewaySubscription(
        id=data.get("id", ""),
        status=data.get("status", ""),
        plan_id=data.get("plan_id"),
        short_url=data.get("short_url"),
        customer_id=data.get("customer_id"),
        payment_method=data.get("payment_method"),
        current_start=to_datetime(data.get("current_start")),
        current_end=to_datetime(data.get("current_end")),
        start_at=to_datetime(data.get("start_at")),
        charge_at=to_datetime(data.get("charge_at")),
        ended_at=to_datetime(data.get("ended_at")),
        remaining_count=int(remaining) if remaining is not None and str(remaining).isdigit() else None,
        notes=notes if isinstance(notes, dict) else {},
    )


class RazorpayAdapter(PaymentGateway):
    """
    Razorpay API adapter for subscription billing.

    Every call is bounded by the configured timeout. Timeouts raise
    RazorpayTimeoutError and are never treated as success.
    """

    # API settings
    API_BASE_URL = "https://api.razorpay.com/v1"

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        webhook_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        currency: str | None = None,
    ):
        """
        Initialize Razorpay adapter.

        Args:
            key_id: Razorpay key id (defaults to settings)
            key_secret: Razorpay key secret (defaults to settings)
            webhook_secret: Webhook signing secret (defaults to settings)
            base_url: API base URL (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
            currency: Currency for orders and invoices (defaults to settings)
        """
        self.key_id = key_id or settings.razorpay_key_id
        self.key_secret = key_secret or settings.razorpay_key_secret
        self.webhook_secret = webhook_secret or settings.razorpay_webhook_secret
        self.base_url = (base_url or settings.razorpay_api_base_url or self.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.razorpay_timeout
        self.currency = currency or settings.razorpay_currency

        if not self.key_id or not self.key_secret:
            logger.warning(
                "Razorpay credentials not configured. Set razorpay_key_id and razorpay_key_secret in settings."
            )

    def _get_auth(self) -> httpx.BasicAuth:
        """Get HTTP basic auth for API requests."""
        if not self.key_id or not self.key_secret:
            raise RazorpayAuthError(
                "Razorpay credentials not configured. Set razorpay_key_id and razorpay_key_secret in settings."
            )
        return httpx.BasicAuth(self.key_id, self.key_secret)

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make HTTP request to the Razorpay API.

        Args:
            method: HTTP method (GET, POST, PATCH)
            endpoint: API endpoint path
            data: Request body data (for POST/PATCH)
            params: Query parameters

        Returns:
            API response as dictionary

        Raises:
            RazorpayAuthError: If credentials are missing or rejected
            RazorpayTimeoutError: If the request times out
            RazorpayAPIError: If the request fails for any other reason
        """
        url = f"{self.base_url}/{endpoint}"
        auth = self._get_auth()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, auth=auth) as client:
                logger.info("Making %s request to %s", method, endpoint)
                response = await client.request(method, url, json=data, params=params)
                response.raise_for_status()

                if response.status_code == 204 or not response.content:
                    return {}

                return response.json()

        except httpx.TimeoutException as e:
            logger.error("Razorpay request to %s timed out: %s", endpoint, e)
            raise RazorpayTimeoutError(f"Request timed out: {endpoint}") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            error_code = None
            error_detail = str(e)
            try:
                error = e.response.json().get("error", {})
                if isinstance(error, dict):
                    error_code = error.get("code")
                    error_detail = error.get("description") or error_detail
            except ValueError:
                pass

            logger.error("Razorpay API error (%s) on %s: %s", status_code, endpoint, error_detail)
            if status_code == 401:
                raise RazorpayAuthError(f"Authentication failed: {error_detail}") from e
            raise RazorpayAPIError(
                f"API request failed: {error_detail}",
                status_code=status_code,
                error_code=error_code,
            ) from e
        except httpx.RequestError as e:
            logger.error("HTTP request error on %s: %s", endpoint, e)
            raise RazorpayAPIError(f"Request failed: {e}") from e

    async def create_subscription(
        self,
        plan_id: str,
        total_count: int,
        notes: dict[str, Any] | None = None,
        customer_notify: bool = True,
        start_at: datetime | None = None,
    ) -> GatewaySubscription:
        """
        Create a subscription for a plan.

        Args:
            plan_id: Razorpay plan id
            total_count: Number of billing cycles
            notes: Metadata echoed back in webhooks
            customer_notify: Whether Razorpay notifies the customer
            start_at: Defer the first charge until this time

        Returns:
            The created subscription, including its checkout short_url
        """
        body: dict[str, Any] = {
            "plan_id": plan_id,
            "total_count": total_count,
            "quantity": 1,
            "customer_notify": 1 if customer_notify else 0,
            "notes": _clean_notes(notes),
        }
        if start_at is not None:
            body["start_at"] = _epoch(start_at)

        response = await self._make_request("POST", "subscriptions", data=body)
        subscription = subscription_from_api_response(response)
        logger.info("Created subscription %s for plan %s", subscription.id, plan_id)
        return subscription

    async def update_subscription(
        self,
        subscription_id: str,
        plan_id: str,
        remaining_count: int,
        schedule_change_at: str = "now",
    ) -> GatewaySubscription:
        """Change the plan of a subscription in place."""
        body = {
            "plan_id": plan_id,
            "schedule_change_at": schedule_change_at,
            "customer_notify": 1,
            "remaining_count": remaining_count,
        }
        response = await self._make_request("PATCH", f"subscriptions/{subscription_id}", data=body)
        logger.info(
            "Updated subscription %s to plan %s (remaining_count=%d)",
            subscription_id,
            plan_id,
            remaining_count,
        )
        return subscription_from_api_response(response)

    async def cancel_subscription(
        self,
        subscription_id: str,
        at_cycle_end: bool = False,
    ) -> GatewaySubscription:
        """Cancel a subscription now or at the end of its current cycle."""
        response = await self._make_request(
            "POST",
            f"subscriptions/{subscription_id}/cancel",
            data={"cancel_at_cycle_end": 1 if at_cycle_end else 0},
        )
        logger.info("Cancelled subscription %s (at_cycle_end=%s)", subscription_id, at_cycle_end)
        return subscription_from_api_response(response)

    async def fetch_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Fetch a subscription by id."""
        response = await self._make_request("GET", f"subscriptions/{subscription_id}")
        return subscription_from_api_response(response)

    async def list_subscription_payments(self, subscription_id: str) -> list[GatewayPayment]:
        """List payments for a subscription, newest first."""
        response = await self._make_request("GET", f"subscriptions/{subscription_id}/payments")
        payments = [
            GatewayPayment(
                id=item.get("id", ""),
                amount=int(item.get("amount") or 0),
                status=item.get("status", ""),
                method=item.get("method"),
                created_at=to_datetime(item.get("created_at")),
            )
            for item in response.get("items", [])
            if isinstance(item, dict) and item.get("id")
        ]
        payments.sort(key=lambda p: p.created_at.timestamp() if p.created_at else 0, reverse=True)
        return payments

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str | None = None,
        notes: dict[str, Any] | None = None,
    ) -> GatewayOrder:
        """Create a one-off payment order."""
        body: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency or self.currency,
            "notes": _clean_notes(notes),
        }
        if receipt:
            body["receipt"] = receipt[:40]

        response = await self._make_request("POST", "orders", data=body)
        order = GatewayOrder(
            id=response.get("id", ""),
            amount=int(response.get("amount") or amount_minor),
            currency=response.get("currency", body["currency"]),
            status=response.get("status", ""),
        )
        logger.info("Created order %s for %d %s", order.id, order.amount, order.currency)
        return order

    async def create_invoice(
        self,
        subscription_id: str,
        amount_minor: int,
        description: str,
        customer_id: str | None = None,
        notes: dict[str, Any] | None = None,
    ) -> GatewayInvoice:
        """Create a one-off invoice linked to a subscription through its notes."""
        body: dict[str, Any] = {
            "type": "invoice",
            "description": description,
            "currency": self.currency,
            "line_items": [
                {
                    "name": description,
                    "amount": amount_minor,
                    "currency": self.currency,
                    "quantity": 1,
                }
            ],
            "sms_notify": 1,
            "email_notify": 1,
            "notes": _clean_notes({**(notes or {}), "subscriptionId": subscription_id}),
        }
        if customer_id:
            body["customer_id"] = customer_id

        response = await self._make_request("POST", "invoices", data=body)
        invoice = GatewayInvoice(
            id=response.get("id", ""),
            amount=int(response.get("amount") or amount_minor),
            status=response.get("status", ""),
            short_url=response.get("short_url"),
        )
        logger.info("Created invoice %s for subscription %s", invoice.id, subscription_id)
        return invoice

    async def create_refund(
        self,
        payment_id: str,
        amount_minor: int,
        notes: dict[str, Any] | None = None,
    ) -> GatewayRefund:
        """Refund part of a captured payment."""
        response = await self._make_request(
            "POST",
            f"payments/{payment_id}/refund",
            data={"amount": amount_minor, "notes": _clean_notes(notes)},
        )
        refund = GatewayRefund(
            id=response.get("id", ""),
            payment_id=response.get("payment_id", payment_id),
            amount=int(response.get("amount") or amount_minor),
            status=response.get("status", ""),
        )
        logger.info("Created refund %s of %d on payment %s", refund.id, refund.amount, payment_id)
        return refund

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """
        Verify webhook signature using HMAC SHA256.

        Args:
            payload: Raw webhook payload (bytes)
            signature: Signature from X-Razorpay-Signature header

        Returns:
            True if signature is valid, False otherwise

        Raises:
            RazorpayWebhookError: If webhook secret not configured
        """
        if not self.webhook_secret:
            raise RazorpayWebhookError(
                "Webhook secret not configured. Set razorpay_webhook_secret in settings."
            )

        expected_signature = hmac.new(
            key=self.webhook_secret.encode("utf-8"),
            msg=payload,
            digestmod=hashlib.sha256,
        ).hexdigest()

        is_valid = hmac.compare_digest(expected_signature, signature or "")

        if is_valid:
            logger.info("Webhook signature verified successfully")
        else:
            logger.warning("Webhook signature verification failed")

        return is_valid

    def verify_payment_signature(
        self,
        payment_id: str,
        subscription_id: str,
        signature: str,
    ) -> bool:
        """
        Verify the signature the checkout returns after a subscription payment.

        Razorpay signs "<payment_id>|<subscription_id>" with the key secret.
        """
        if not self.key_secret:
            raise RazorpayAuthError("Razorpay key secret not configured")

        expected_signature = hmac.new(
            key=self.key_secret.encode("utf-8"),
            msg=f"{payment_id}|{subscription_id}".encode("utf-8"),
            digestmod=hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected_signature, signature or "")


# Factory function for easy instantiation
def create_razorpay_adapter(
    key_id: str | None = None,
    key_secret: str | None = None,
    webhook_secret: str | None = None,
) -> RazorpayAdapter:
    """
    Create a Razorpay adapter instance.

    Args:
        key_id: Razorpay key id (defaults to settings)
        key_secret: Razorpay key secret (defaults to settings)
        webhook_secret: Webhook signing secret (defaults to settings)

    Returns:
        RazorpayAdapter instance
    """
    return RazorpayAdapter(
        key_id=key_id,
        key_secret=key_secret,
        webhook_secret=webhook_secret,
    )
