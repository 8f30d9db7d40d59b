"""Repository interfaces for data access."""

from abc import ABC, abstractmethod

from ..domain.subscription import RecordPatch, SubscriptionRecord


class SubscriptionRecordRepository(ABC):
    """Abstract repository for per-user subscription records."""

    @abstractmethod
    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        """Get the record for a user, or None if none exists."""
        ...

    @abstractmethod
    async def create(self, record: SubscriptionRecord) -> str:
        """
        Create the record for a user and return its id.

        Raises RecordExistsError if the user already has a record.
        """
        ...

    @abstractmethod
    async def update(self, user_id: str, patch: RecordPatch) -> str | None:
        """
        Apply a field-scoped patch to the freshest stored record.

        Returns the record id, or None if the user has no record. Raises
        StaleRecordError when the patch guard no longer matches.
        """
        ...
