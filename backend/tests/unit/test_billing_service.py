"""
Unit tests for checkout, cancellation and status operations.
"""

from datetime import timedelta

import pytest

from core.domain.subscription import BillingStatus, SubscriptionRecord, Tier
from core.interfaces import GatewaySubscription
from services.billing_service import BillingService, BillingServiceError


@pytest.fixture
def service(memory_repo, fake_gateway, catalog, clock) -> BillingService:
    return BillingService(memory_repo, fake_gateway, catalog, clock=clock)


class TestCheckout:
    """Tests for create_checkout()."""

    async def test_new_user_gets_payment_link(self, service, fake_gateway, memory_repo):
        data = await service.create_checkout("user-1", "PRO", "ANNUAL", email="user@example.com")

        assert data["subscription_id"] == "sub_new_1"
        assert data["payment_url"] == "https://rzp.io/i/sub_new_1"
        assert data["plan"].plan_id == "plan_R7G9duBj5HV9Oz"
        assert data["amount"] == 1089.0

        [create] = fake_gateway.calls_to("create_subscription")
        assert create["total_count"] == 5
        assert create["notes"]["email"] == "user@example.com"
        assert create["notes"]["userId"] == "USER#user-1"
        # Record is created by the activation webhook
        assert memory_repo.records == {}

    async def test_existing_free_record_tracks_pending_subscription(self, service, memory_repo, now):
        memory_repo.seed(SubscriptionRecord(user_id="user-1"))

        await service.create_checkout("user-1", "BASIC", "MONTHLY")

        record = await memory_repo.get_by_user("user-1")
        assert record.billing.pending_subscription_id == "sub_new_1"
        assert record.billing.target_plan_id == "plan_R7G6hu5lBKJdpl"
        assert record.billing.transition_at == now
        assert record.tier == Tier.NONE

    async def test_active_subscriber_is_rejected(self, service, memory_repo, fake_gateway, make_record):
        memory_repo.seed(make_record())

        with pytest.raises(BillingServiceError) as exc_info:
            await service.create_checkout("user-1", "PRO", "MONTHLY")

        assert exc_info.value.kind == BillingServiceError.ALREADY_SUBSCRIBED
        assert fake_gateway.calls == []

    async def test_unknown_plan(self, service):
        with pytest.raises(BillingServiceError) as exc_info:
            await service.create_checkout("user-1", "GOLD", "MONTHLY")
        assert exc_info.value.kind == BillingServiceError.INVALID_PLAN

    async def test_gateway_failure(self, service, fake_gateway):
        fake_gateway.fail_on.add("create_subscription")
        with pytest.raises(BillingServiceError) as exc_info:
            await service.create_checkout("user-1", "PRO", "MONTHLY")
        assert exc_info.value.kind == BillingServiceError.GATEWAY_ERROR


class TestCancel:
    """Tests for cancel_subscription()."""

    async def test_cancels_at_cycle_end(self, service, memory_repo, fake_gateway, make_record, now):
        memory_repo.seed(make_record(days_left=12))

        data = await service.cancel_subscription("user-1")

        assert fake_gateway.calls_to("cancel_subscription") == [{"subscription_id": "sub_old", "at_cycle_end": True}]
        assert data["subscription_id"] == "sub_old"
        assert data["access_until"] == now + timedelta(days=12)
        # Entitlement is only revoked by the cancellation webhook
        record = await memory_repo.get_by_user("user-1")
        assert record.billing.status == BillingStatus.ACTIVE
        assert record.tier == Tier.BASIC

    async def test_no_subscription(self, service):
        with pytest.raises(BillingServiceError) as exc_info:
            await service.cancel_subscription("user-1")
        assert exc_info.value.kind == BillingServiceError.NO_SUBSCRIPTION

    async def test_already_cancelled(self, service, memory_repo, make_record):
        memory_repo.seed(
            make_record(subscription_id=None, status=BillingStatus.CANCELLED, cancelled_subscription_id="sub_old")
        )
        with pytest.raises(BillingServiceError) as exc_info:
            await service.cancel_subscription("user-1")
        assert exc_info.value.kind == BillingServiceError.ALREADY_CANCELLED

    async def test_subscription_mismatch(self, service, memory_repo, fake_gateway, make_record):
        memory_repo.seed(make_record())
        with pytest.raises(BillingServiceError) as exc_info:
            await service.cancel_subscription("user-1", subscription_id="sub_other")
        assert exc_info.value.kind == BillingServiceError.SUBSCRIPTION_MISMATCH
        assert fake_gateway.calls == []


class TestStatusAndMandate:
    """Tests for get_billing_status() and get_mandate_link()."""

    async def test_status_for_unknown_user(self, service):
        data = await service.get_billing_status("user-1")
        assert data["tier"] == "NONE"
        assert data["has_active_subscription"] is False
        assert data["plan"] is None
        assert len(data["available_changes"]) == 4

    async def test_status_for_subscriber(self, service, memory_repo, make_record):
        memory_repo.seed(make_record(tier=Tier.PRO))

        data = await service.get_billing_status("user-1")

        assert data["tier"] == "PRO"
        assert data["has_active_subscription"] is True
        assert data["plan"].plan_id == "plan_R7G7VNbsYt55dG"
        assert data["billing"]["gatewaySubscriptionId"] == "sub_old"
        assert len(data["available_changes"]) == 3

    async def test_mandate_link_for_pending_upgrade(self, service, memory_repo, fake_gateway, make_record):
        memory_repo.seed(make_record(subscription_id="sub_new_9", upgrade_in_progress=True))
        fake_gateway.subscriptions["sub_new_9"] = GatewaySubscription(
            id="sub_new_9", status="created", short_url="https://rzp.io/i/auth"
        )

        data = await service.get_mandate_link("user-1")

        assert data == {"subscription_id": "sub_new_9", "payment_url": "https://rzp.io/i/auth"}

    async def test_mandate_link_after_authentication(self, service, memory_repo, fake_gateway, make_record):
        memory_repo.seed(make_record(pending_subscription_id="sub_p"))
        fake_gateway.subscriptions["sub_p"] = GatewaySubscription(id="sub_p", status="authenticated")

        with pytest.raises(BillingServiceError) as exc_info:
            await service.get_mandate_link("user-1")
        assert exc_info.value.kind == BillingServiceError.NO_PENDING_MANDATE

    async def test_no_pending_mandate(self, service, memory_repo, make_record):
        memory_repo.seed(make_record())
        with pytest.raises(BillingServiceError) as exc_info:
            await service.get_mandate_link("user-1")
        assert exc_info.value.kind == BillingServiceError.NO_PENDING_MANDATE


class TestVerifyPayment:
    """Tests for verify_checkout_payment()."""

    def test_valid_signature(self, service):
        data = service.verify_checkout_payment("user-1", "pay_1", "sub_1", "valid_signature")
        assert data == {"verified": True, "payment_id": "pay_1", "subscription_id": "sub_1"}

    def test_invalid_signature(self, service):
        with pytest.raises(BillingServiceError) as exc_info:
            service.verify_checkout_payment("user-1", "pay_1", "sub_1", "forged")
        assert exc_info.value.kind == BillingServiceError.INVALID_SIGNATURE
