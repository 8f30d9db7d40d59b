"""
SQLAlchemy implementation of the subscription record store.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import (
    BillingState,
    RecordExistsError,
    RecordPatch,
    StaleRecordError,
    SubscriptionRecord,
    to_datetime,
)
from core.interfaces.repositories import SubscriptionRecordRepository

from .models.base import utcnow
from .models.subscription_record import UserSubscription

logger = logging.getLogger(__name__)


def _to_domain(row: UserSubscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=row.id,
        user_id=row.user_id,
        tier=row.tier,
        billing=BillingState.from_dict(row.billing) if row.billing is not None else None,
        created_at=to_datetime(row.created_at),
        updated_at=to_datetime(row.updated_at),
    )


class SqlAlchemySubscriptionRecordRepository(SubscriptionRecordRepository):
    """
    Subscription records stored in the subscription_records table.

    Updates lock the row, merge the patch onto the freshest stored state and
    write tier and billing back in one transaction, so concurrent handlers
    only overwrite the fields their patch names.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        result = await self.db.execute(
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _to_domain(row) if row is not None else None

    async def create(self, record: SubscriptionRecord) -> str:
        now = utcnow()
        row = UserSubscription(
            user_id=record.user_id,
            tier=record.tier.value,
            billing=record.billing.to_dict() if record.billing is not None else None,
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise RecordExistsError(f"Subscription record already exists for user {record.user_id}") from e

        logger.info("Created subscription record for user %s (tier=%s)", record.user_id, row.tier)
        return row.id

    async def update(self, user_id: str, patch: RecordPatch) -> str | None:
        result = await self.db.execute(
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            await self.db.rollback()
            return None

        try:
            merged = patch.apply(_to_domain(row))
        except StaleRecordError:
            await self.db.rollback()
            raise

        row.tier = merged.tier.value
        # Reassign so the JSON column is flagged as modified
        row.billing = merged.billing.to_dict() if merged.billing is not None else None
        row.updated_at = utcnow()
        await self.db.commit()
        return row.id
