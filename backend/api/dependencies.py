"""
API dependencies wiring services to their collaborators.

Tests replace these through app.dependency_overrides.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.email.resend_adapter import ResendEmailService
from adapters.payments import create_razorpay_adapter
from core.interfaces import NotificationService, PaymentGateway, SubscriptionRecordRepository
from core.plans import PlanCatalog
from infrastructure.config.settings import settings
from infrastructure.database.connection import get_db
from infrastructure.database.subscription_repository import SqlAlchemySubscriptionRecordRepository
from services.billing_service import BillingService
from services.plan_change import PlanChangeService
from services.webhook_reconciler import SubscriptionReconciler


@lru_cache
def get_plan_catalog() -> PlanCatalog:
    """Plan catalog built once from configured gateway plan ids."""
    return PlanCatalog.from_settings(settings)


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    return create_razorpay_adapter()


@lru_cache
def get_notification_service() -> NotificationService:
    return ResendEmailService()


def get_subscription_repository(
    db: AsyncSession = Depends(get_db),
) -> SubscriptionRecordRepository:
    return SqlAlchemySubscriptionRecordRepository(db)


def get_plan_change_service(
    repository: SubscriptionRecordRepository = Depends(get_subscription_repository),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> PlanChangeService:
    return PlanChangeService(repository, gateway, catalog)


def get_reconciler(
    repository: SubscriptionRecordRepository = Depends(get_subscription_repository),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationService = Depends(get_notification_service),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(repository, gateway, notifier, catalog)


def get_billing_service(
    repository: SubscriptionRecordRepository = Depends(get_subscription_repository),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> BillingService:
    return BillingService(repository, gateway, catalog)
