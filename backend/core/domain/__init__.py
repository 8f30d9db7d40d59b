# Domain Entities
# Pure business objects with no external dependencies
from .events import GatewayEvent, GatewayEventType, PaymentEntity, SubscriptionEntity
from .subscription import (
    DELETE,
    UNSET,
    BillingPatch,
    BillingState,
    BillingStatus,
    PaymentMethod,
    PaymentStatus,
    RecordExistsError,
    RecordPatch,
    RenewalPeriod,
    StaleRecordError,
    SubscriptionRecord,
    Tier,
)

__all__ = [
    "Tier",
    "RenewalPeriod",
    "PaymentMethod",
    "PaymentStatus",
    "BillingStatus",
    "BillingState",
    "SubscriptionRecord",
    "BillingPatch",
    "RecordPatch",
    "UNSET",
    "DELETE",
    "RecordExistsError",
    "StaleRecordError",
    "GatewayEvent",
    "GatewayEventType",
    "SubscriptionEntity",
    "PaymentEntity",
]
