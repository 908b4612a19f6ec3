"""
SubscriptionRepository - reads and upserts rows of the subscriptions table
"""

from typing import Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from database_models import Subscription


class SubscriptionRepository:
    """
    Repository class for Subscription database operations.

    The most recently created row for a user is the one gating access;
    older rows are history and are never deleted.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def _current_query(self, user_id: str):
        return (
            select(Subscription)
            .where(Subscription.user_id == str(user_id))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )

    async def get_current(self, user_id: str, for_update: bool = False) -> Optional[Subscription]:
        """
        Retrieve the authoritative (newest) subscription row for a user.

        Args:
            user_id: Internal user id
            for_update: Lock the row for the rest of the transaction where the
                backend supports SELECT ... FOR UPDATE (ignored by SQLite)

        Returns:
            Subscription object if any row exists, None otherwise
        """
        query = self._current_query(user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_history(self, user_id: str) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == str(user_id))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        return list(result.scalars().all())

    async def upsert_for_user(self, user_id: str, values: dict) -> Subscription:
        """
        Update the user's current row, or insert one if the user has none.

        Args:
            user_id: Internal user id
            values: Column values to write

        Returns:
            The updated or inserted Subscription
        """
        row = await self.get_current(user_id, for_update=True)
        if row is None:
            row = Subscription(user_id=str(user_id), **values)
            self.db.add(row)
        else:
            for key, value in values.items():
                if hasattr(row, key):
                    setattr(row, key, value)
        await self.db.flush()
        await self.db.refresh(row)
        return row

    async def update_current(self, user_id: str, values: dict) -> Optional[Subscription]:
        """
        Update the user's current row only; never inserts.

        Returns:
            The updated Subscription, or None when the user has no row
        """
        row = await self.get_current(user_id, for_update=True)
        if row is None:
            return None
        for key, value in values.items():
            if hasattr(row, key):
                setattr(row, key, value)
        await self.db.flush()
        await self.db.refresh(row)
        return row
