"""
Service layer for business logic.
"""

from .billing_service import BillingService, BillingServiceError
from .plan_change import (
    AlreadyOnPlanError,
    ChangeFlow,
    ChangeOutcome,
    GatewayStepError,
    InvalidPlanError,
    InvalidTransitionError,
    NoActiveSubscriptionError,
    NoSubscriptionError,
    PlanChangeError,
    PlanChangeService,
)
from .webhook_reconciler import ReconcileResult, SubscriptionReconciler

__all__ = [
    "BillingService",
    "BillingServiceError",
    "PlanChangeService",
    "PlanChangeError",
    "InvalidPlanError",
    "NoSubscriptionError",
    "NoActiveSubscriptionError",
    "AlreadyOnPlanError",
    "InvalidTransitionError",
    "GatewayStepError",
    "ChangeFlow",
    "ChangeOutcome",
    "ReconcileResult",
    "SubscriptionReconciler",
]
