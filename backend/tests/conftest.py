"""
Pytest configuration and shared fixtures for backend tests.
"""

import copy
import hashlib
import hmac
import itertools
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncGenerator

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Test configuration must be in place before settings are first loaded
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import after path is set
from core.domain.subscription import (
    BillingState,
    BillingStatus,
    PaymentMethod,
    RecordExistsError,
    RecordPatch,
    RenewalPeriod,
    SubscriptionRecord,
    Tier,
)
from core.interfaces import (
    GatewayInvoice,
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    GatewaySubscription,
    NotificationService,
    PaymentGateway,
    PaymentGatewayError,
    SubscriptionRecordRepository,
)
from core.plans import PlanCatalog
from infrastructure.database.connection import get_db
from infrastructure.database.models import Base

# Database URL for testing (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test"
NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# In-memory collaborators
# ============================================================================


class InMemorySubscriptionRepository(SubscriptionRecordRepository):
    """Dict-backed record store with the same patch semantics as the SQL store."""

    def __init__(self):
        self.records: dict[str, SubscriptionRecord] = {}
        self._ids = itertools.count(1)

    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        record = self.records.get(user_id)
        return copy.deepcopy(record) if record is not None else None

    async def create(self, record: SubscriptionRecord) -> str:
        if record.user_id in self.records:
            raise RecordExistsError(record.user_id)
        stored = copy.deepcopy(record)
        stored.id = stored.id or f"rec_{next(self._ids)}"
        self.records[record.user_id] = stored
        return stored.id

    async def update(self, user_id: str, patch: RecordPatch) -> str | None:
        record = self.records.get(user_id)
        if record is None:
            return None
        self.records[user_id] = patch.apply(record)
        return record.id

    def seed(self, record: SubscriptionRecord) -> SubscriptionRecord:
        record.id = record.id or f"rec_{next(self._ids)}"
        self.records[record.user_id] = copy.deepcopy(record)
        return record


class FakeGateway(PaymentGateway):
    """Gateway double that records every call and can be told to fail."""

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_on: set[str] = set()
        self.subscriptions: dict[str, GatewaySubscription] = {}
        self.payments: list[GatewayPayment] = []
        self._ids = itertools.count(1)

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if name in self.fail_on:
            raise PaymentGatewayError(f"{name} failed")

    def calls_to(self, name: str) -> list[dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    async def create_subscription(
        self, plan_id, total_count, notes=None, customer_notify=True, start_at=None
    ):
        self._record(
            "create_subscription",
            plan_id=plan_id,
            total_count=total_count,
            notes=notes,
            customer_notify=customer_notify,
            start_at=start_at,
        )
        subscription_id = f"sub_new_{next(self._ids)}"
        subscription = GatewaySubscription(
            id=subscription_id,
            status="created",
            plan_id=plan_id,
            short_url=f"https://rzp.io/i/{subscription_id}",
            start_at=start_at,
            notes=notes or {},
        )
        self.subscriptions[subscription_id] = subscription
        return subscription

    async def update_subscription(self, subscription_id, plan_id, remaining_count, schedule_change_at="now"):
        self._record(
            "update_subscription",
            subscription_id=subscription_id,
            plan_id=plan_id,
            remaining_count=remaining_count,
            schedule_change_at=schedule_change_at,
        )
        return GatewaySubscription(id=subscription_id, status="active", plan_id=plan_id)

    async def cancel_subscription(self, subscription_id, at_cycle_end=False):
        self._record("cancel_subscription", subscription_id=subscription_id, at_cycle_end=at_cycle_end)
        return GatewaySubscription(id=subscription_id, status="active" if at_cycle_end else "cancelled")

    async def create_order(self, amount_minor, currency, receipt=None, notes=None):
        self._record("create_order", amount_minor=amount_minor, currency=currency)
        return GatewayOrder(id=f"order_{next(self._ids)}", amount=amount_minor, currency=currency, status="created")

    async def create_invoice(self, subscription_id, amount_minor, description, customer_id=None, notes=None):
        self._record(
            "create_invoice",
            subscription_id=subscription_id,
            amount_minor=amount_minor,
            description=description,
            customer_id=customer_id,
        )
        invoice_id = f"inv_{next(self._ids)}"
        return GatewayInvoice(
            id=invoice_id, amount=amount_minor, status="issued", short_url=f"https://rzp.io/i/{invoice_id}"
        )

    async def create_refund(self, payment_id, amount_minor, notes=None):
        self._record("create_refund", payment_id=payment_id, amount_minor=amount_minor)
        return GatewayRefund(id=f"rfnd_{next(self._ids)}", payment_id=payment_id, amount=amount_minor, status="processed")

    async def fetch_subscription(self, subscription_id):
        self._record("fetch_subscription", subscription_id=subscription_id)
        if subscription_id not in self.subscriptions:
            raise PaymentGatewayError(f"subscription {subscription_id} not found")
        return self.subscriptions[subscription_id]

    async def list_subscription_payments(self, subscription_id):
        self._record("list_subscription_payments", subscription_id=subscription_id)
        return list(self.payments)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        expected = hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature or "")

    def verify_payment_signature(self, payment_id, subscription_id, signature) -> bool:
        return signature == "valid_signature"


class FakeNotifier(NotificationService):
    """Notification double counting confirmation sends."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: list[dict[str, Any]] = []

    async def send_subscription_confirmation(self, user_id, to_email, plan, period_end=None):
        self.sent.append({"user_id": user_id, "to_email": to_email, "plan": plan, "period_end": period_end})
        return self.succeed


def _sign_webhook(body: bytes) -> str:
    """Signature header value for a webhook body."""
    return hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


def _make_record(
    user_id: str = "user-1",
    tier: Tier = Tier.BASIC,
    renewal_period: RenewalPeriod = RenewalPeriod.MONTHLY,
    subscription_id: str | None = "sub_old",
    payment_method: PaymentMethod | None = PaymentMethod.CARD,
    days_left: int = 10,
    cycle_days: int = 30,
    status: BillingStatus = BillingStatus.ACTIVE,
    **billing_fields,
) -> SubscriptionRecord:
    """Subscription record on a paid plan with `days_left` days of the cycle remaining."""
    period_end = NOW + timedelta(days=days_left)
    billing = BillingState(
        renewal_period=renewal_period,
        current_period_start=period_end - timedelta(days=cycle_days),
        current_period_end=period_end,
        gateway_subscription_id=subscription_id,
        payment_method=payment_method,
        status=status,
        **billing_fields,
    )
    return SubscriptionRecord(user_id=user_id, tier=tier, billing=billing)


# ============================================================================
# Service fixtures
# ============================================================================


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    """Fixed clock for deterministic billing math."""
    return lambda: NOW


@pytest.fixture
def make_record():
    """Factory for paid subscription records relative to the fixed clock."""
    return _make_record


@pytest.fixture
def sign_webhook():
    return _sign_webhook


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog.from_plan_ids()


@pytest.fixture
def memory_repo() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def async_client(
    db_session: AsyncSession,
    fake_gateway: FakeGateway,
    fake_notifier: FakeNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client wired to the test database and gateway doubles."""
    # Import app here to avoid circular imports
    from api.dependencies import get_notification_service, get_payment_gateway
    from main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_notification_service] = lambda: fake_notifier

    # Reset rate limiter state between tests to prevent cross-test 429s
    if hasattr(app.state, "limiter"):
        app.state.limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
