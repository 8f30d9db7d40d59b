"""Service interfaces for external integrations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..plans import PlanDescriptor


class PaymentGatewayError(Exception):
    """Base exception for failed or timed-out gateway calls."""

    pass


@dataclass
class GatewaySubscription:
    """State of a subscription at the payment gateway."""

    id: str
    status: str
    plan_id: str | None = None
    short_url: str | None = None
    customer_id: str | None = None
    payment_method: str | None = None
    current_start: datetime | None = None
    current_end: datetime | None = None
    start_at: datetime | None = None
    charge_at: datetime | None = None
    ended_at: datetime | None = None
    remaining_count: int | None = None
    notes: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayOrder:
    """One-off payment order."""

    id: str
    amount: int
    currency: str
    status: str


@dataclass
class GatewayInvoice:
    """One-off invoice with a hosted payment page."""

    id: str
    amount: int
    status: str
    short_url: str | None = None


@dataclass
class GatewayRefund:
    """Refund issued against a captured payment."""

    id: str
    payment_id: str
    amount: int
    status: str


@dataclass
class GatewayPayment:
    """Payment made against a subscription."""

    id: str
    amount: int
    status: str
    method: str | None = None
    created_at: datetime | None = None


class PaymentGateway(ABC):
    """Abstract client for the subscription payment gateway."""

    @abstractmethod
    async def create_subscription(
        self,
        plan_id: str,
        total_count: int,
        notes: dict[str, Any] | None = None,
        customer_notify: bool = True,
        start_at: datetime | None = None,
    ) -> GatewaySubscription:
        """Create a subscription and return it with its checkout URL."""
        ...

    @abstractmethod
    async def update_subscription(
        self,
        subscription_id: str,
        plan_id: str,
        remaining_count: int,
        schedule_change_at: str = "now",
    ) -> GatewaySubscription:
        """Change the plan of an existing subscription in place."""
        ...

    @abstractmethod
    async def cancel_subscription(
        self,
        subscription_id: str,
        at_cycle_end: bool = False,
    ) -> GatewaySubscription:
        """Cancel a subscription now or at the end of the current cycle."""
        ...

    @abstractmethod
    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str | None = None,
        notes: dict[str, Any] | None = None,
    ) -> GatewayOrder:
        """Create a one-off payment order."""
        ...

    @abstractmethod
    async def create_invoice(
        self,
        subscription_id: str,
        amount_minor: int,
        description: str,
        customer_id: str | None = None,
        notes: dict[str, Any] | None = None,
    ) -> GatewayInvoice:
        """Create a one-off invoice tied to a subscription."""
        ...

    @abstractmethod
    async def create_refund(
        self,
        payment_id: str,
        amount_minor: int,
        notes: dict[str, Any] | None = None,
    ) -> GatewayRefund:
        """Refund part of a captured payment."""
        ...

    @abstractmethod
    async def fetch_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Fetch the current state of a subscription."""
        ...

    @abstractmethod
    async def list_subscription_payments(self, subscription_id: str) -> list[GatewayPayment]:
        """List payments made against a subscription, newest first."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Check a webhook body against its signature header."""
        ...

    @abstractmethod
    def verify_payment_signature(
        self,
        payment_id: str,
        subscription_id: str,
        signature: str,
    ) -> bool:
        """Check the signature returned by the checkout after payment."""
        ...


class NotificationService(ABC):
    """Abstract service for user notifications."""

    @abstractmethod
    async def send_subscription_confirmation(
        self,
        user_id: str,
        to_email: str | None,
        plan: PlanDescriptor,
        period_end: datetime | None = None,
    ) -> bool:
        """Notify the user that their subscription is confirmed."""
        ...
