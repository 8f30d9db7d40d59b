# Interfaces (Abstract Contracts)
# Adapters implement these interfaces
from .repositories import SubscriptionRecordRepository
from .services import (
    GatewayInvoice,
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    GatewaySubscription,
    NotificationService,
    PaymentGateway,
    PaymentGatewayError,
)

__all__ = [
    "SubscriptionRecordRepository",
    "PaymentGateway",
    "PaymentGatewayError",
    "NotificationService",
    "GatewaySubscription",
    "GatewayOrder",
    "GatewayInvoice",
    "GatewayRefund",
    "GatewayPayment",
]
