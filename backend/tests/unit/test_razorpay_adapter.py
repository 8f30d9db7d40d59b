"""
Unit tests for the Razorpay billing adapter.

Tests the Razorpay API integration including:
- Subscription operations
- Invoices, orders and refunds
- Webhook and checkout signature verification
- Error handling and timeouts
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from adapters.payments.razorpay_adapter import (
    RazorpayAdapter,
    RazorpayAPIError,
    RazorpayAuthError,
    RazorpayTimeoutError,
    RazorpayWebhookError,
    create_razorpay_adapter,
    subscription_from_api_response,
)
from core.interfaces import PaymentGatewayError

BASE_URL = "https://api.razorpay.com/v1"


@pytest.fixture
def adapter() -> RazorpayAdapter:
    """Create RazorpayAdapter instance with test credentials."""
    return RazorpayAdapter(
        key_id="rzp_test_key",
        key_secret="rzp_test_secret",
        webhook_secret="test_webhook_secret",
        base_url=BASE_URL,
        timeout=5.0,
        currency="INR",
    )


@pytest.fixture
def subscription_entity() -> dict[str, Any]:
    """Razorpay subscription entity."""
    return {
        "id": "sub_00000000000001",
        "entity": "subscription",
        "plan_id": "plan_R7G7VNbsYt55dG",
        "status": "created",
        "current_start": None,
        "current_end": None,
        "start_at": 1750000000,
        "customer_id": "cust_1",
        "payment_method": "upi",
        "remaining_count": "12",
        "short_url": "https://rzp.io/i/abc",
        "notes": {"userId": "USER#user-1"},
    }


def _response(method: str, endpoint: str, status_code: int = 200, json: Any = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        json=json if json is not None else {},
        request=httpx.Request(method, f"{BASE_URL}/{endpoint}"),
    )


class TestSubscriptions:
    """Tests for subscription endpoints."""

    async def test_create_subscription(self, adapter, subscription_entity):
        start_at = datetime(2025, 7, 15, tzinfo=timezone.utc)
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response("POST", "subscriptions", json=subscription_entity),
        ) as mock_request:
            subscription = await adapter.create_subscription(
                plan_id="plan_R7G7VNbsYt55dG",
                total_count=12,
                notes={"userId": "USER#user-1", "isUpgrade": True, "empty": None},
                start_at=start_at,
            )

        assert subscription.id == "sub_00000000000001"
        assert subscription.short_url == "https://rzp.io/i/abc"
        assert subscription.remaining_count == 12

        method, url = mock_request.call_args.args
        body = mock_request.call_args.kwargs["json"]
        assert method == "POST"
        assert url == f"{BASE_URL}/subscriptions"
        assert body["plan_id"] == "plan_R7G7VNbsYt55dG"
        assert body["total_count"] == 12
        assert body["customer_notify"] == 1
        assert body["start_at"] == int(start_at.timestamp())
        assert body["notes"] == {"userId": "USER#user-1", "isUpgrade": "true"}

    async def test_update_subscription(self, adapter, subscription_entity):
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response("PATCH", "subscriptions/sub_1", json=subscription_entity),
        ) as mock_request:
            await adapter.update_subscription("sub_1", "plan_R7G7VNbsYt55dG", remaining_count=5)

        method, url = mock_request.call_args.args
        body = mock_request.call_args.kwargs["json"]
        assert method == "PATCH"
        assert url.endswith("/subscriptions/sub_1")
        assert body["schedule_change_at"] == "now"
        assert body["remaining_count"] == 5

    async def test_cancel_at_cycle_end(self, adapter, subscription_entity):
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response("POST", "subscriptions/sub_1/cancel", json=subscription_entity),
        ) as mock_request:
            await adapter.cancel_subscription("sub_1", at_cycle_end=True)

        assert mock_request.call_args.args[1].endswith("/subscriptions/sub_1/cancel")
        assert mock_request.call_args.kwargs["json"] == {"cancel_at_cycle_end": 1}

    async def test_list_payments_newest_first(self, adapter):
        payload = {
            "items": [
                {"id": "pay_old", "amount": 8900, "status": "captured", "created_at": 1700000000},
                {"id": "pay_new", "amount": 8900, "status": "captured", "created_at": 1750000000},
            ]
        }
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response("GET", "subscriptions/sub_1/payments", json=payload),
        ):
            payments = await adapter.list_subscription_payments("sub_1")

        assert [p.id for p in payments] == ["pay_new", "pay_old"]

    def test_subscription_from_api_response_handles_list_notes(self, subscription_entity):
        subscription_entity["notes"] = []
        subscription = subscription_from_api_response(subscription_entity)
        assert subscription.notes == {}
        assert subscription.start_at == datetime.fromtimestamp(1750000000, tz=timezone.utc)


class TestPayments:
    """Tests for invoices, orders and refunds."""

    async def test_create_invoice_links_subscription(self, adapter):
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response(
                "POST", "invoices", json={"id": "inv_1", "amount": 9933, "status": "issued", "short_url": "https://rzp.io/i/inv"}
            ),
        ) as mock_request:
            invoice = await adapter.create_invoice("sub_1", 9933, "Pro Monthly", customer_id="cust_1")

        assert invoice.id == "inv_1"
        assert invoice.short_url == "https://rzp.io/i/inv"
        body = mock_request.call_args.kwargs["json"]
        assert body["line_items"][0]["amount"] == 9933
        assert body["notes"]["subscriptionId"] == "sub_1"
        assert body["customer_id"] == "cust_1"

    async def test_create_order(self, adapter):
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response("POST", "orders", json={"id": "order_1", "amount": 500, "currency": "INR", "status": "created"}),
        ):
            order = await adapter.create_order(500, "INR", receipt="r1")

        assert order.id == "order_1"
        assert order.status == "created"

    async def test_create_refund(self, adapter):
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response(
                "POST", "payments/pay_1/refund", json={"id": "rfnd_1", "payment_id": "pay_1", "amount": 3000, "status": "processed"}
            ),
        ) as mock_request:
            refund = await adapter.create_refund("pay_1", 3000)

        assert refund.amount == 3000
        assert mock_request.call_args.args[1].endswith("/payments/pay_1/refund")


class TestErrorHandling:
    """Tests for error mapping."""

    async def test_timeout_is_a_failure(self, adapter):
        with patch.object(
            httpx.AsyncClient, "request", new_callable=AsyncMock, side_effect=httpx.ReadTimeout("timed out")
        ):
            with pytest.raises(RazorpayTimeoutError):
                await adapter.cancel_subscription("sub_1")

    async def test_timeout_is_a_gateway_error(self, adapter):
        with patch.object(
            httpx.AsyncClient, "request", new_callable=AsyncMock, side_effect=httpx.ConnectTimeout("timed out")
        ):
            with pytest.raises(PaymentGatewayError):
                await adapter.fetch_subscription("sub_1")

    async def test_api_error_carries_description(self, adapter):
        error_body = {"error": {"code": "BAD_REQUEST_ERROR", "description": "The id provided does not exist"}}
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response("GET", "subscriptions/sub_x", status_code=400, json=error_body),
        ):
            with pytest.raises(RazorpayAPIError) as exc_info:
                await adapter.fetch_subscription("sub_x")

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "BAD_REQUEST_ERROR"
        assert "does not exist" in str(exc_info.value)

    async def test_unauthorized(self, adapter):
        with patch.object(
            httpx.AsyncClient,
            "request",
            new_callable=AsyncMock,
            return_value=_response("GET", "subscriptions/sub_1", status_code=401),
        ):
            with pytest.raises(RazorpayAuthError):
                await adapter.fetch_subscription("sub_1")

    async def test_connection_error(self, adapter):
        with patch.object(
            httpx.AsyncClient, "request", new_callable=AsyncMock, side_effect=httpx.ConnectError("refused")
        ):
            with pytest.raises(RazorpayAPIError):
                await adapter.fetch_subscription("sub_1")

    async def test_missing_credentials(self, adapter):
        adapter.key_secret = ""
        with pytest.raises(RazorpayAuthError):
            await adapter.fetch_subscription("sub_1")


class TestSignatures:
    """Tests for webhook and checkout signature verification."""

    def test_valid_webhook_signature(self, adapter):
        payload = b'{"event": "subscription.charged"}'
        signature = hmac.new(b"test_webhook_secret", payload, hashlib.sha256).hexdigest()
        assert adapter.verify_webhook_signature(payload, signature)

    def test_invalid_webhook_signature(self, adapter):
        assert not adapter.verify_webhook_signature(b"{}", "deadbeef")
        assert not adapter.verify_webhook_signature(b"{}", "")

    def test_webhook_secret_required(self, adapter):
        adapter.webhook_secret = ""
        with pytest.raises(RazorpayWebhookError):
            adapter.verify_webhook_signature(b"{}", "sig")

    def test_payment_signature(self, adapter):
        signature = hmac.new(b"rzp_test_secret", b"pay_1|sub_1", hashlib.sha256).hexdigest()
        assert adapter.verify_payment_signature("pay_1", "sub_1", signature)
        assert not adapter.verify_payment_signature("pay_1", "sub_2", signature)

    def test_factory_uses_settings(self):
        adapter = create_razorpay_adapter()
        assert adapter.key_id == "rzp_test_key"
        assert adapter.webhook_secret == "whsec_test"
