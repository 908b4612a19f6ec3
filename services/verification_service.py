"""
Verification Service - cross-checks a caller's entitlement with Whop and repairs the store
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.auth.user import Principal
from config import Settings, settings as default_settings, PLAN_DEALCLOSER
from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from services.entitlement import (
    STATUS_ACTIVE,
    evaluate_entitlement,
    is_row_active,
    parse_timestamp,
    parse_epoch_seconds,
    utcnow,
)
from services.provider_events import ProviderEvent, PROVIDER_WHOP, KIND_ACTIVATED, plan_type_for
from services.subscription_service import SubscriptionService
from services.whop_client import WhopClient, ProviderError

logger = logging.getLogger(__name__)

VERIFICATION_VERSION = "2"

SOURCE_ADMIN = "admin"
SOURCE_STORE = "store"
SOURCE_PROVIDER = "provider"


def membership_period_end(membership: dict) -> Optional[datetime]:
    return (
        parse_timestamp(membership.get("valid_until"))
        or parse_epoch_seconds(membership.get("valid_until"))
        or parse_epoch_seconds(membership.get("renewal_period_end"))
    )


def is_membership_active(membership: dict, now: datetime) -> bool:
    """
    Same rule the store evaluation applies, plus the provider's explicit flag:
    status "active", valid is True, and an end timestamp in the future.
    """
    if membership.get("status") != STATUS_ACTIVE or membership.get("valid") is not True:
        return False
    period_end = membership_period_end(membership)
    return period_end is not None and period_end > now


class VerificationService:
    """
    User-initiated verification.

    The store stays the only gate source: a membership confirmed by Whop is
    written through as an activation and the answer is read back from the
    store, never returned straight from the provider.
    """

    def __init__(self, db: AsyncSession, whop: Optional[WhopClient] = None, settings: Settings = default_settings):
        self.db = db
        self.settings = settings
        self.whop = whop or WhopClient(settings)
        self.users = UserRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.subscription_service = SubscriptionService(db, settings)

    def _response(self, row, source: str, now: datetime, is_admin: bool = False) -> dict:
        entitlement = evaluate_entitlement(row, now=now, is_admin=is_admin)
        return {**entitlement.to_response(), "source": source, "version": VERIFICATION_VERSION}

    async def _resolve_email(self, principal: Principal, email: Optional[str]) -> Optional[str]:
        """
        The account email of the caller. A body email is only a hint: it is
        never allowed to point the lookup at somebody else's memberships.
        """
        profile = await self.users.get_user_by_id(principal.user_id)
        account_email = ((profile.email if profile else None) or principal.email or "").strip().lower()
        if email and email.strip().lower() != account_email:
            logger.warning(f"Ignoring verification email that does not belong to user {principal.user_id}")
        return account_email or None

    async def verify(self, principal: Principal, email: Optional[str] = None, strict: bool = False,
                     now: Optional[datetime] = None) -> dict:
        """
        Returns:
            {status, currentPeriodEnd, hasActiveSubscription, planType, source, version}
        """
        now = now or utcnow()
        row = await self.subscriptions.get_current(principal.user_id)

        if principal.is_admin:
            return self._response(row, SOURCE_ADMIN, now, is_admin=True)

        if is_row_active(row, now) and not strict:
            return self._response(row, SOURCE_STORE, now)

        if not self.whop.configured:
            logger.warning("WHOP_API_KEY not set; verification answered from the subscription store")
            return self._response(row, SOURCE_STORE, now)

        lookup_email = await self._resolve_email(principal, email)
        if not lookup_email:
            logger.warning(f"No email to verify for user {principal.user_id}")
            return self._response(row, SOURCE_STORE, now)

        try:
            memberships = await self.whop.list_memberships(lookup_email)
        except ProviderError as e:
            logger.warning(f"Whop verification failed for user {principal.user_id}: {e}")
            return self._response(row, SOURCE_STORE, now)

        membership = next((m for m in memberships if is_membership_active(m, now)), None)

        if membership is None:
            if strict and row is not None and row.provider == PROVIDER_WHOP and is_row_active(row, now):
                logger.info(f"Whop reports no valid membership for user {principal.user_id}; cancelling stale row")
                try:
                    async with self.db.begin_nested():
                        row = await self.subscription_service.deactivate(principal.user_id, now)
                except SQLAlchemyError as e:
                    logger.error(f"Strict repair failed for user {principal.user_id}: {e}", exc_info=True)
                    row = await self.subscriptions.get_current(principal.user_id)
            return self._response(row, SOURCE_STORE, now)

        event = ProviderEvent(
            provider=PROVIDER_WHOP,
            event_type="verification.repair",
            kind=KIND_ACTIVATED,
            user_id=principal.user_id,
            external_id=membership.get("id"),
            plan_type=plan_type_for(membership.get("plan_id"), self.settings.whop_plan_ids(), PLAN_DEALCLOSER),
            period_end=membership_period_end(membership),
        )
        try:
            async with self.db.begin_nested():
                row = await self.subscription_service.activate(principal.user_id, event, now)
        except SQLAlchemyError as e:
            logger.error(f"Write-through after Whop verification failed for user {principal.user_id}: {e}", exc_info=True)
            row = await self.subscriptions.get_current(principal.user_id)
            return self._response(row, SOURCE_STORE, now)

        return self._response(row, SOURCE_PROVIDER, now)
