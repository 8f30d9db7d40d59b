"""Health check endpoints."""

import asyncio
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_plan_catalog
from core.plans import PlanCatalog
from infrastructure.config import get_settings
from infrastructure.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter()
settings = get_settings()


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/health/db")
async def health_check_db(db: AsyncSession = Depends(get_db)):
    """Health check with database connectivity."""
    try:
        result = await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=5.0)
        result.scalar()
        db_status = "connected"
    except TimeoutError:
        logger.error("Health check DB timeout")
        db_status = "error: database timeout"
    except Exception as e:
        logger.error("Health check DB error: %s", str(e))
        db_status = "error: database check failed"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "database": db_status,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/health/services")
async def services_check(catalog: PlanCatalog = Depends(get_plan_catalog)):
    """Check configuration of the payment gateway and its collaborators."""
    services = {}

    # Razorpay
    services["razorpay"] = {
        "configured": bool(settings.razorpay_key_id and settings.razorpay_key_secret),
        "webhook_secret_set": bool(settings.razorpay_webhook_secret),
        "api_base_url": settings.razorpay_api_base_url,
        "currency": settings.razorpay_currency,
        "plans": [plan.plan_id for plan in catalog.all()],
    }

    # Resend
    services["resend"] = {
        "configured": bool(settings.resend_api_key),
        "from_email": settings.resend_from_email,
    }

    # Redis webhook deduplication is optional
    services["webhook_dedup"] = {
        "configured": bool(settings.redis_url),
    }

    razorpay = services["razorpay"]
    all_configured = razorpay["configured"] and razorpay["webhook_secret_set"]

    return {
        "status": "healthy" if all_configured else "degraded",
        "services": services,
        "timestamp": datetime.now(UTC).isoformat(),
    }
