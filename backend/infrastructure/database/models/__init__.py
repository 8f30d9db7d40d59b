"""
SQLAlchemy database models.
"""

from .base import Base, TimestampMixin
from .subscription_record import UserSubscription

__all__ = [
    "Base",
    "TimestampMixin",
    "UserSubscription",
]
