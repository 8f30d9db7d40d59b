"""
Billing and subscription API routes.
"""

import json
import logging
from typing import Annotated, Any

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from api.dependencies import (
    get_billing_service,
    get_payment_gateway,
    get_plan_catalog,
    get_plan_change_service,
    get_reconciler,
)
from api.middleware.rate_limit import get_rate_limit, limiter
from api.schemas.billing import (
    CancelRequest,
    CheckoutRequest,
    CheckoutResponse,
    MandateLinkResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    PlanInfo,
    PricingResponse,
    SubscriptionCancelResponse,
    SubscriptionStatusResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)
from core.billing_math import to_major_units
from core.interfaces.services import PaymentGateway, PaymentGatewayError
from core.plans import CURRENCY, PlanCatalog, PlanDescriptor
from infrastructure.config.settings import settings
from services.billing_service import BillingService, BillingServiceError
from services.plan_change import GatewayStepError, PlanChangeError, PlanChangeService
from services.webhook_reconciler import ReconcileResult, SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

WEBHOOK_KEY_PREFIX = "webhook:processed:"

_PLAN_CHANGE_STATUS = {
    "invalid_plan": status.HTTP_400_BAD_REQUEST,
    "no_subscription": status.HTTP_404_NOT_FOUND,
    "no_active_subscription": status.HTTP_400_BAD_REQUEST,
    "already_on_plan": status.HTTP_400_BAD_REQUEST,
    "invalid_transition": status.HTTP_400_BAD_REQUEST,
    "concurrent_change": status.HTTP_409_CONFLICT,
}

_BILLING_ERROR_STATUS = {
    BillingServiceError.NO_SUBSCRIPTION: status.HTTP_404_NOT_FOUND,
    BillingServiceError.NO_PENDING_MANDATE: status.HTTP_404_NOT_FOUND,
    BillingServiceError.ALREADY_SUBSCRIBED: status.HTTP_409_CONFLICT,
}


def _plan_info(plan: PlanDescriptor) -> PlanInfo:
    return PlanInfo(
        plan_id=plan.plan_id,
        tier=plan.tier.value,
        renewal_period=plan.renewal_period.value,
        name=plan.name,
        price_minor=plan.price_minor,
        price=to_major_units(plan.price_minor),
        currency=CURRENCY,
    )


def _gateway_failure(request: Request, message: str) -> HTTPException:
    """Generic upstream failure; gateway error bodies stay in the logs."""
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={
            "code": "gateway_error",
            "message": message,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def _billing_error(request: Request, error: BillingServiceError) -> HTTPException:
    if error.kind == BillingServiceError.GATEWAY_ERROR:
        return _gateway_failure(request, "Payment provider request failed. Please try again.")
    return HTTPException(
        status_code=_BILLING_ERROR_STATUS.get(error.kind, status.HTTP_400_BAD_REQUEST),
        detail={"code": error.kind, "message": error.message},
    )


async def _is_duplicate_event(event_id: str) -> bool:
    """Check the processed-event ledger. Redis errors degrade to 'not seen'."""
    if not settings.redis_url:
        return False
    try:
        r = aioredis.from_url(settings.redis_url)
        try:
            return bool(await r.exists(f"{WEBHOOK_KEY_PREFIX}{event_id}"))
        finally:
            await r.aclose()
    except Exception as redis_err:
        logger.warning("Webhook idempotency check unavailable (Redis error): %s", redis_err)
        return False


async def _mark_event_processed(event_id: str) -> None:
    if not settings.redis_url:
        return
    try:
        r = aioredis.from_url(settings.redis_url)
        try:
            await r.setex(f"{WEBHOOK_KEY_PREFIX}{event_id}", settings.webhook_dedup_ttl_seconds, "1")
        finally:
            await r.aclose()
    except Exception as redis_err:
        logger.warning("Could not record processed webhook %s: %s", event_id, redis_err)


@router.get("/plans", response_model=PricingResponse)
async def get_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    """Get all available subscription plans."""
    return PricingResponse(plans=[_plan_info(plan) for plan in catalog.all()])


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user_id: Annotated[str, Query(min_length=1, max_length=255)],
    service: BillingService = Depends(get_billing_service),
):
    """Get the user's current subscription status and the plans they can move to."""
    data = await service.get_billing_status(user_id)
    return SubscriptionStatusResponse(
        user_id=data["user_id"],
        tier=data["tier"],
        has_active_subscription=data["has_active_subscription"],
        plan=_plan_info(data["plan"]) if data["plan"] else None,
        billing=data["billing"],
        available_changes=[_plan_info(plan) for plan in data["available_changes"]],
    )


@router.post("/checkout", response_model=CheckoutResponse)
@limiter.limit(get_rate_limit("checkout"))
async def create_checkout(
    request: Request,
    body: CheckoutRequest,
    service: BillingService = Depends(get_billing_service),
):
    """
    Start a new subscription.

    Returns the gateway's hosted payment link. The subscription record is
    updated when the activation webhook arrives.
    """
    try:
        data = await service.create_checkout(
            user_id=body.user_id,
            tier=body.tier.value,
            renewal_period=body.renewal_period.value,
            email=body.email,
        )
    except BillingServiceError as e:
        raise _billing_error(request, e)

    return CheckoutResponse(
        subscription_id=data["subscription_id"],
        payment_url=data["payment_url"],
        plan=_plan_info(data["plan"]),
        amount=data["amount"],
    )


@router.post("/change-plan", response_model=PlanChangeResponse)
@limiter.limit(get_rate_limit("change_plan"))
async def change_plan(
    request: Request,
    body: PlanChangeRequest,
    service: PlanChangeService = Depends(get_plan_change_service),
):
    """
    Upgrade, downgrade or switch the billing interval of an active subscription.

    Tier changes take effect when the gateway confirms them by webhook.
    """
    try:
        outcome = await service.request_plan_change(
            body.user_id,
            body.tier.value,
            body.renewal_period.value,
        )
    except GatewayStepError as e:
        logger.error("Plan change for user %s failed at %s: %s", body.user_id, e.step, e.cause)
        raise _gateway_failure(request, "Payment provider request failed. Please try again.")
    except PlanChangeError as e:
        raise HTTPException(
            status_code=_PLAN_CHANGE_STATUS.get(e.kind, status.HTTP_400_BAD_REQUEST),
            detail={"code": e.kind, "message": e.message, "details": e.details},
        )

    return PlanChangeResponse(
        flow=outcome.flow.value,
        change_type=outcome.change_type,
        from_plan=_plan_info(outcome.from_plan) if outcome.from_plan else None,
        to_plan=_plan_info(outcome.to_plan),
        subscription_id=outcome.subscription_id,
        previous_subscription_id=outcome.previous_subscription_id,
        amount_due=outcome.amount_due,
        refund_amount=outcome.refund_amount,
        payment_url=outcome.payment_url,
        invoice_id=outcome.invoice_id,
        invoice_url=outcome.invoice_url,
        warnings=outcome.warnings,
    )


@router.post("/cancel", response_model=SubscriptionCancelResponse)
@limiter.limit(get_rate_limit("cancel"))
async def cancel_subscription(
    request: Request,
    body: CancelRequest,
    service: BillingService = Depends(get_billing_service),
):
    """
    Cancel the current subscription at the end of the billing cycle.

    Access continues until the end of the paid period.
    """
    try:
        data = await service.cancel_subscription(body.user_id, body.subscription_id)
    except BillingServiceError as e:
        raise _billing_error(request, e)

    return SubscriptionCancelResponse(
        subscription_id=data["subscription_id"],
        status=data["status"],
        access_until=data["access_until"],
        message="Subscription will be cancelled at the end of the current billing period.",
    )


@router.get("/mandate-link", response_model=MandateLinkResponse)
async def get_mandate_link(
    request: Request,
    user_id: Annotated[str, Query(min_length=1, max_length=255)],
    service: BillingService = Depends(get_billing_service),
):
    """Get the authentication link of a subscription that still needs its mandate."""
    try:
        data = await service.get_mandate_link(user_id)
    except BillingServiceError as e:
        raise _billing_error(request, e)
    return MandateLinkResponse(**data)


@router.post("/verify-payment", response_model=VerifyPaymentResponse)
@limiter.limit(get_rate_limit("verify_payment"))
async def verify_payment(
    request: Request,
    body: VerifyPaymentRequest,
    service: BillingService = Depends(get_billing_service),
):
    """Verify the signature returned by the checkout after payment."""
    try:
        data = service.verify_checkout_payment(
            user_id=body.user_id,
            payment_id=body.payment_id,
            subscription_id=body.subscription_id,
            signature=body.signature,
        )
    except BillingServiceError as e:
        raise _billing_error(request, e)
    except PaymentGatewayError as e:
        logger.error("Checkout verification unavailable: %s", e)
        raise _gateway_failure(request, "Payment verification is not available.")
    return VerifyPaymentResponse(**data)


@router.post("/webhook", response_model=WebhookResponse)
@limiter.limit(get_rate_limit("webhook"))
async def handle_webhook(
    request: Request,
    x_razorpay_signature: Annotated[str | None, Header(alias="X-Razorpay-Signature")] = None,
    x_razorpay_event_id: Annotated[str | None, Header(alias="X-Razorpay-Event-Id")] = None,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """
    Handle Razorpay webhook events.

    Signature failures are rejected so the gateway retries. Once verified,
    every delivery is acknowledged with 200, including events that could
    not be applied.
    """
    body = await request.body()

    if not settings.razorpay_webhook_secret:
        # 403 rather than 503 so the gateway does not retry aggressively
        logger.error("Webhook rejected: RAZORPAY_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook verification not configured")

    if not x_razorpay_signature:
        logger.warning("Webhook received without signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")

    if not gateway.verify_webhook_signature(body, x_razorpay_signature):
        logger.error("Invalid webhook signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload: Any = json.loads(body)
    except (json.JSONDecodeError, ValueError) as e:
        logger.error("Dropping webhook with invalid JSON payload: %s", e)
        return WebhookResponse(result=ReconcileResult.DROPPED.value)

    if x_razorpay_event_id and await _is_duplicate_event(x_razorpay_event_id):
        logger.info("Duplicate webhook event %s, skipping", x_razorpay_event_id)
        return WebhookResponse(result="duplicate")

    result = await reconciler.apply_gateway_event(payload, event_id=x_razorpay_event_id)

    if x_razorpay_event_id and result is not ReconcileResult.ERROR:
        await _mark_event_processed(x_razorpay_event_id)

    return WebhookResponse(result=result.value)
