"""
Subscription Service - applies normalised provider events to the subscription store
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings as default_settings
from crud.payment import PaymentRepository
from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from services.entitlement import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    evaluate_entitlement,
    is_row_active,
    parse_timestamp,
    utcnow,
    EntitlementStatus,
)
from services.provider_events import (
    ProviderEvent,
    KIND_ACTIVATED,
    KIND_RENEWED,
    KIND_DEACTIVATED,
    KIND_PAYMENT_COMPLETED,
    KIND_PAYMENT_PENDING,
    KIND_PAYMENT_FAILED,
    KIND_PAYMENT_CANCELLED,
    PAYMENT_KINDS,
)

logger = logging.getLogger(__name__)

PAYMENT_STATUS_BY_KIND = {
    KIND_PAYMENT_PENDING: "pending",
    KIND_PAYMENT_FAILED: "failed",
    KIND_PAYMENT_CANCELLED: "cancelled",
}


def owns_row(row, external_id: Optional[str]) -> bool:
    """
    True when an event for external_id may change row.

    Either side missing an external id cannot be told apart, so it matches.
    """
    if row is None or not external_id or not row.external_subscription_id:
        return True
    return row.external_subscription_id == external_id


class SubscriptionService:
    """
    Reconciles provider events into the subscriptions table.

    Every mutation is an upsert on the user's newest row, so concurrent or
    repeated deliveries of the same event converge on one row.
    """

    def __init__(self, db: AsyncSession, settings: Settings = default_settings):
        self.db = db
        self.settings = settings
        self.users = UserRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.payments = PaymentRepository(db)

    async def get_entitlement(self, user_id: str, is_admin: bool = False,
                              now: Optional[datetime] = None) -> EntitlementStatus:
        row = await self.subscriptions.get_current(user_id)
        return evaluate_entitlement(row, now=now, is_admin=is_admin)

    async def resolve_user_id(self, event: ProviderEvent) -> Optional[str]:
        """
        Map an event onto an internal user id.

        The explicit id from provider metadata wins when it names a known
        profile; otherwise the event email is looked up. Returns None rather
        than guessing.
        """
        if event.user_id:
            user = await self.users.get_user_by_id(event.user_id)
            if user:
                return user.id
            logger.warning(f"{event.provider} event {event.event_type}: metadata user_id={event.user_id} matches no profile")

        if event.email:
            user = await self.users.get_user_by_email(event.email)
            if user:
                return user.id

        return None

    def _fallback_period_end(self, now: datetime) -> datetime:
        return now + timedelta(days=self.settings.subscription_fallback_days)

    async def apply_event(self, event: ProviderEvent, now: Optional[datetime] = None) -> dict:
        """
        Apply one normalised event.

        Returns:
            {"processed": bool, "user_id": str | None, "note": str}

        Raises:
            SQLAlchemyError: the subscription write itself failed
        """
        now = now or utcnow()

        if event.is_ignored:
            logger.info(f"Unhandled {event.provider} webhook event: {event.event_type}")
            return {"processed": False, "user_id": None, "note": f"ignored:{event.event_type}"}

        if event.kind in PAYMENT_KINDS:
            return await self._apply_payment_event(event, now)

        user_id = await self.resolve_user_id(event)
        if not user_id:
            logger.error(
                f"{event.provider} event {event.event_type} could not be correlated to a user "
                f"(external_id={event.external_id}); dropping"
            )
            return {"processed": False, "user_id": None, "note": "uncorrelated"}

        if event.kind == KIND_ACTIVATED:
            await self.activate(user_id, event, now)
        elif event.kind in (KIND_RENEWED, KIND_DEACTIVATED):
            current = await self.subscriptions.get_current(user_id, for_update=True)
            if current is None and event.kind == KIND_DEACTIVATED:
                logger.info(f"{event.event_type} for user {user_id} without a subscription row; nothing to cancel")
                return {"processed": False, "user_id": user_id, "note": "no-subscription"}
            if not owns_row(current, event.external_id):
                logger.warning(
                    f"{event.provider} {event.event_type} for {event.external_id} does not match the current "
                    f"subscription {current.external_subscription_id} of user {user_id}; ignoring"
                )
                return {"processed": False, "user_id": user_id, "note": "other-subscription"}
            if event.kind == KIND_RENEWED:
                await self.renew(user_id, event, now)
            else:
                await self.deactivate(user_id, now)

        logger.info(f"{event.provider} {event.event_type} applied for user {user_id}")
        return {"processed": True, "user_id": user_id, "note": event.kind}

    async def activate(self, user_id: str, event: ProviderEvent, now: datetime):
        current = await self.subscriptions.get_current(user_id, for_update=True)

        period_start = event.period_start
        if period_start is None:
            already_active = current is not None and current.status == STATUS_ACTIVE
            period_start = current.current_period_start if already_active and current.current_period_start else now

        values = {
            "status": STATUS_ACTIVE,
            "plan_type": event.plan_type,
            "provider": event.provider,
            "current_period_start": period_start,
            "current_period_end": event.period_end or self._fallback_period_end(now),
            "cancelled_at": None,
        }
        if event.external_id:
            values["external_subscription_id"] = event.external_id
        return await self.subscriptions.upsert_for_user(user_id, values)

    async def renew(self, user_id: str, event: ProviderEvent, now: datetime):
        """
        Extend the current period and force status active.

        Without a provider timestamp an unexpired end is kept, so a repeated
        renewal never moves the period.
        """
        current = await self.subscriptions.get_current(user_id, for_update=True)

        if event.period_end is not None:
            period_end = event.period_end
        else:
            existing_end = parse_timestamp(current.current_period_end) if current else None
            period_end = existing_end if existing_end and existing_end > now else self._fallback_period_end(now)

        if current is None:
            return await self.subscriptions.upsert_for_user(user_id, {
                "status": STATUS_ACTIVE,
                "plan_type": event.plan_type,
                "provider": event.provider,
                "external_subscription_id": event.external_id,
                "current_period_start": event.period_start or now,
                "current_period_end": period_end,
            })

        return await self.subscriptions.upsert_for_user(user_id, {
            "status": STATUS_ACTIVE,
            "current_period_end": period_end,
        })

    async def deactivate(self, user_id: str, now: datetime):
        """Cancel the current row in place; the period end is left untouched."""
        return await self.subscriptions.update_current(user_id, {
            "status": STATUS_CANCELLED,
            "cancelled_at": now,
        })

    async def _apply_payment_event(self, event: ProviderEvent, now: datetime) -> dict:
        order_id = event.external_id
        if event.kind != KIND_PAYMENT_COMPLETED:
            payment = await self.payments.update_status(order_id, {
                "status": PAYMENT_STATUS_BY_KIND[event.kind],
            })
            if payment is None:
                logger.warning(f"PayPal {event.event_type}: no payment for order {order_id}")
                return {"processed": False, "user_id": None, "note": "unknown-order"}
            return {"processed": True, "user_id": payment.user_id, "note": event.kind}

        payment = await self.payments.update_status(order_id, {
            "status": "completed",
            "completed_at": now,
        })
        if payment is None:
            logger.warning(f"PayPal {event.event_type}: no payment for order {order_id}")
            return {"processed": False, "user_id": None, "note": "unknown-order"}

        logger.info(f"Payment completed, activating plan for user: {payment.user_id}")
        # The capture succeeded whatever happens to the bookkeeping below
        try:
            async with self.db.begin_nested():
                await self.subscriptions.upsert_for_user(payment.user_id, {
                    "status": STATUS_ACTIVE,
                    "plan_type": payment.plan_type,
                    "provider": event.provider,
                    "external_subscription_id": order_id,
                    "current_period_start": now,
                    "current_period_end": now + timedelta(days=self.settings.one_time_access_days),
                    "cancelled_at": None,
                })
        except SQLAlchemyError as e:
            logger.error(f"Subscription update after payment {order_id} failed: {e}", exc_info=True)
            return {"processed": True, "user_id": payment.user_id, "note": "payment-recorded-subscription-failed"}

        return {"processed": True, "user_id": payment.user_id, "note": event.kind}

    async def mark_cancelled_if_active(self, user_id: str, now: Optional[datetime] = None,
                                       external_id: Optional[str] = None):
        """
        Cancel the current row only while it still grants access.

        When external_id is given, the row must also belong to that provider
        subscription.
        """
        now = now or utcnow()
        row = await self.subscriptions.get_current(user_id, for_update=True)
        if row is None or not is_row_active(row, now):
            return None
        if not owns_row(row, external_id):
            return None
        return await self.deactivate(user_id, now)
