"""
WebhookConfigRepository for user-registered outbound callbacks
"""

from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from database_models import WebhookConfiguration


class WebhookConfigRepository:
    """
    Repository class for WebhookConfiguration database operations.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_for_user(self, user_id: str) -> List[WebhookConfiguration]:
        result = await self.db.execute(
            select(WebhookConfiguration)
            .where(WebhookConfiguration.user_id == str(user_id))
            .order_by(WebhookConfiguration.created_at.desc(), WebhookConfiguration.id.desc())
        )
        return list(result.scalars().all())

    async def list_active_for_event(self, user_id: str, event_type: str) -> List[WebhookConfiguration]:
        """
        Active configurations of a user that subscribe to the given event.

        The events column is a JSON list, so the containment check runs here
        rather than in SQL to stay portable across SQLite and Postgres.
        """
        result = await self.db.execute(
            select(WebhookConfiguration)
            .where(WebhookConfiguration.user_id == str(user_id))
            .where(WebhookConfiguration.is_active.is_(True))
            .order_by(WebhookConfiguration.id)
        )
        return [hook for hook in result.scalars().all() if event_type in (hook.events or [])]

    async def get_for_user(self, user_id: str, webhook_id: int) -> Optional[WebhookConfiguration]:
        result = await self.db.execute(
            select(WebhookConfiguration)
            .where(WebhookConfiguration.id == webhook_id)
            .where(WebhookConfiguration.user_id == str(user_id))
        )
        return result.scalar_one_or_none()

    async def create(self, user_id: str, data: dict) -> WebhookConfiguration:
        hook = WebhookConfiguration(
            user_id=str(user_id),
            name=data["name"],
            webhook_url=data["webhook_url"],
            events=list(data.get("events") or []),
            secret=data.get("secret") or None,
            is_active=data.get("is_active", True),
        )
        self.db.add(hook)
        await self.db.flush()
        await self.db.refresh(hook)
        return hook

    async def delete(self, hook: WebhookConfiguration) -> None:
        await self.db.delete(hook)
        await self.db.flush()
