"""
Resend email service adapter.
"""

import logging
from datetime import datetime
from typing import Optional

import resend

from core.billing_math import to_major_units
from core.interfaces.services import NotificationService
from core.plans import CURRENCY, PlanDescriptor
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)


class ResendEmailService(NotificationService):
    """Subscription notifications sent through the Resend API."""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self._api_key = api_key or settings.resend_api_key
        if self._api_key:
            resend.api_key = self._api_key
        self._from_email = from_email or settings.resend_from_email
        self._frontend_url = settings.frontend_url.rstrip("/")

    async def send_subscription_confirmation(
        self,
        user_id: str,
        to_email: Optional[str],
        plan: PlanDescriptor,
        period_end: Optional[datetime] = None,
    ) -> bool:
        """
        Send the "subscription confirmed" email.

        Args:
            user_id: User the subscription belongs to
            to_email: Recipient email address
            plan: Plan the user is now on
            period_end: End of the first paid period

        Returns:
            True if sent successfully, False otherwise
        """
        if not to_email:
            logger.warning("No email address for user %s, confirmation not sent", user_id)
            return False

        if not self._api_key:
            logger.info(
                "[DEV] Subscription confirmation for %s (user %s): %s",
                to_email,
                user_id,
                plan.name,
            )
            return True

        try:
            resend.Emails.send({
                "from": self._from_email,
                "to": to_email,
                "subject": f"Your {plan.name} subscription is active",
                "html": self._get_confirmation_email_html(plan, period_end),
            })
            logger.info("Sent subscription confirmation to user %s", user_id)
            return True
        except Exception as e:
            logger.error("Failed to send subscription confirmation to user %s: %s", user_id, e)
            return False

    def _get_confirmation_email_html(
        self,
        plan: PlanDescriptor,
        period_end: Optional[datetime],
    ) -> str:
        renews = (
            f"<p>Your current billing period ends on {period_end.strftime('%d %B %Y')}.</p>"
            if period_end
            else ""
        )
        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <meta name="viewport" content="width=device-width, initial-scale=1.0">
        </head>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
            <h1 style="font-size: 22px;">Subscription confirmed</h1>
            <p>Thanks for subscribing to <strong>{plan.name}</strong>
               ({CURRENCY} {to_major_units(plan.price_minor):.2f} per {plan.renewal_period.value.lower()} cycle).</p>
            {renews}
            <p><a href="{self._frontend_url}/billing" style="color: #4f46e5;">Manage your subscription</a></p>
        </body>
        </html>
        """
