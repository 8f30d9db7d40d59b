"""
Subscription record database model.
"""

from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class UserSubscription(Base, TimestampMixin):
    """One row per user holding the tier and the billing document."""

    __tablename__ = "subscription_records"

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="NONE")

    # Billing document, stored with the camelCase keys of BillingState.to_dict()
    billing: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<UserSubscription(user_id={self.user_id}, tier={self.tier})>"
