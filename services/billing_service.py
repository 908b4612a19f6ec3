"""
Billing Service - checkout, billing portal and cancellation across Stripe, Whop and PayPal
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import stripe

from backend.auth.user import Principal
from config import Settings, settings as default_settings, PLAN_TYPES
from crud.payment import PaymentRepository
from crud.subscription import SubscriptionRepository
from services.provider_events import PROVIDER_STRIPE
from services.subscription_service import SubscriptionService
from services.whop_client import WhopClient, ProviderError

logger = logging.getLogger(__name__)

# Initialize Stripe client
if default_settings.stripe_secret_key:
    stripe.api_key = default_settings.stripe_secret_key
else:
    logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

CHECKOUT_URL_FIELDS = ("checkout_url", "url", "checkoutUrl", "payment_url", "hosted_url", "redirect_url", "purchase_url")

GENERIC_PROVIDER_ERROR = "The payment provider could not complete the request. Please try again."


def _checkout_url(session: dict) -> Optional[str]:
    for field in CHECKOUT_URL_FIELDS:
        if session.get(field):
            return session[field]
    return None


class BillingService:
    """
    Service class for handling billing-related business logic.

    Methods return the normalized shape {"data": ..., "is_error": False} or
    {"error": str, "is_error": True, "status": int}. Provider details are
    logged, never returned.
    """

    def __init__(self, db: AsyncSession, whop: Optional[WhopClient] = None, settings: Settings = default_settings):
        """
        Initialize the billing service.

        Args:
            db: AsyncSession instance for database operations
            whop: Whop API client (a default one is built from settings)
            settings: Application settings
        """
        self.db = db
        self.settings = settings
        self.whop = whop or WhopClient(settings)
        self.subscriptions = SubscriptionRepository(db)
        self.payments = PaymentRepository(db)

    def _frontend_url(self) -> str:
        return (self.settings.frontend_url or "http://localhost:5173").rstrip("/")

    def plan_ids(self) -> dict:
        return {"planIds": self.settings.paypal_plan_ids()}

    async def create_checkout_session(self, principal: Principal, plan: str):
        """
        Create a Stripe Checkout session for a subscription plan.

        The user id travels in both session and subscription metadata so that
        webhooks correlate without an email lookup.
        """
        if not self.settings.stripe_secret_key:
            logger.error("STRIPE_SECRET_KEY is not set. Cannot create checkout session.")
            return {"error": "Stripe is not configured", "is_error": True, "status": 503}

        price_id = self.settings.stripe_price_ids().get(plan)
        if not price_id:
            return {"error": f"Plan not available for card checkout: {plan}", "is_error": True, "status": 400}

        frontend_url = self._frontend_url()
        try:
            checkout_session = stripe.checkout.Session.create(
                customer_email=principal.email,
                line_items=[{
                    "price": price_id,
                    "quantity": 1,
                }],
                mode="subscription",
                success_url=f"{frontend_url}/dashboard?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{frontend_url}/checkout?payment=cancelled",
                metadata={"user_id": principal.user_id, "plan": plan},
                subscription_data={"metadata": {"user_id": principal.user_id, "plan": plan}},
            )
            return {"data": {"url": checkout_session.url, "sessionId": checkout_session.id}, "is_error": False}
        except Exception as e:
            logger.error(f"Failed to create checkout session: {e}", exc_info=True)
            return {"error": GENERIC_PROVIDER_ERROR, "is_error": True, "status": 502}

    async def create_billing_portal_session(self, principal: Principal):
        """
        Create a Stripe Billing Portal session for the caller's Stripe subscription.
        """
        if not self.settings.stripe_secret_key:
            logger.error("STRIPE_SECRET_KEY is not set. Cannot create billing portal session.")
            return {"error": "Stripe is not configured", "is_error": True, "status": 503}

        row = await self.subscriptions.get_current(principal.user_id)
        if row is None or row.provider != PROVIDER_STRIPE or not row.external_subscription_id:
            return {"error": "No card subscription found", "is_error": True, "status": 404}

        try:
            subscription = stripe.Subscription.retrieve(row.external_subscription_id)
            portal_session = stripe.billing_portal.Session.create(
                customer=subscription["customer"],
                return_url=f"{self._frontend_url()}/settings"
            )
            return {"data": {"url": portal_session.url}, "is_error": False}
        except Exception as e:
            logger.error(f"Failed to create billing portal session: {e}", exc_info=True)
            return {"error": GENERIC_PROVIDER_ERROR, "is_error": True, "status": 502}

    async def create_whop_checkout(self, principal: Principal, plan: str):
        """
        Create a Whop checkout session; Whop echoes metadata.user_id on membership webhooks.
        """
        if plan not in PLAN_TYPES:
            return {"error": f"Unknown plan: {plan}", "is_error": True, "status": 400}

        whop_plan_id = self.settings.whop_plan_ids().get(plan)
        if not whop_plan_id:
            return {"error": f"Plan ID not configured in Whop: {plan}", "is_error": True, "status": 400}

        if not self.whop.configured or not self.settings.whop_company_id:
            logger.error("Whop credentials not configured. Cannot create checkout session.")
            return {"error": "Whop is not configured", "is_error": True, "status": 503}

        frontend_url = self._frontend_url()
        try:
            session = await self.whop.create_checkout_session(
                plan_id=whop_plan_id,
                email=principal.email,
                metadata={"user_id": principal.user_id, "internal_plan_id": plan},
                success_url=f"{frontend_url}/dashboard?payment=success",
                cancel_url=f"{frontend_url}/checkout?payment=cancelled",
            )
            checkout_url = _checkout_url(session)

            # Some responses omit the URL; the session detail endpoint carries it
            if not checkout_url and session.get("id"):
                try:
                    checkout_url = _checkout_url(await self.whop.get_checkout_session(session["id"]))
                except ProviderError as e:
                    logger.warning(f"Failed to fetch Whop checkout session details: {e}")
        except ProviderError as e:
            logger.error(f"Error creating Whop checkout: {e}")
            return {"error": GENERIC_PROVIDER_ERROR, "is_error": True, "status": 502}

        if not checkout_url:
            logger.error(f"No checkout URL in Whop response for session {session.get('id')}")
            return {"error": "Whop did not return a checkout URL.", "is_error": True, "status": 502}

        return {"data": {"checkoutUrl": checkout_url, "sessionId": session.get("id")}, "is_error": False}

    async def cancel_whop_subscription(self, principal: Principal):
        """
        Cancel the caller's Whop membership at period end and cancel the local row.

        Access ends immediately locally: a cancelled row never gates in.
        """
        if not self.whop.configured:
            return {"error": "Whop is not configured", "is_error": True, "status": 503}

        try:
            memberships = await self.whop.list_memberships(principal.email)
        except ProviderError as e:
            logger.error(f"Failed to fetch memberships from Whop: {e}")
            return {"error": GENERIC_PROVIDER_ERROR, "is_error": True, "status": 502}

        membership = next(
            (m for m in memberships if m.get("status") in ("active", "trialing") and m.get("valid") is True),
            None,
        )
        if membership is None:
            return {"error": "No active subscription found", "is_error": True, "status": 404}

        try:
            cancel_data = await self.whop.cancel_membership(membership["id"], at_period_end=True)
        except ProviderError as e:
            logger.error(f"Whop cancellation error: {e}")
            return {"error": GENERIC_PROVIDER_ERROR, "is_error": True, "status": 502}

        logger.info(f"Whop membership {membership['id']} cancelled for user {principal.user_id}")
        await SubscriptionService(self.db, self.settings).mark_cancelled_if_active(
            principal.user_id, external_id=membership["id"]
        )

        return {
            "data": {
                "success": True,
                "message": "Subscription will be cancelled at the end of your current billing period",
                "cancelAtPeriodEnd": cancel_data.get("cancel_at_period_end", True),
                "currentPeriodEnd": membership.get("renewal_period_end"),
            },
            "is_error": False,
        }

    async def record_paypal_order(self, principal: Principal, plan: str, order_id: str,
                                  amount: Decimal, currency: str = "USD"):
        """
        Store a pending one-off payment for an order created by the PayPal button.

        PAYMENT.CAPTURE.COMPLETED looks the order up here to know whose plan to activate.
        """
        if plan not in PLAN_TYPES:
            return {"error": f"Unknown plan: {plan}", "is_error": True, "status": 400}
        order_id = (order_id or "").strip()
        if not order_id:
            return {"error": "Missing PayPal order id", "is_error": True, "status": 400}
        if amount is None or amount <= 0:
            return {"error": "Amount must be positive", "is_error": True, "status": 400}

        if await self.payments.get_by_order_id(order_id) is not None:
            return {"error": "Order already recorded", "is_error": True, "status": 409}

        try:
            async with self.db.begin_nested():
                payment = await self.payments.create_payment({
                    "user_id": principal.user_id,
                    "plan_type": plan,
                    "amount": amount,
                    "currency": (currency or "USD").upper(),
                    "paypal_order_id": order_id,
                    "status": "pending",
                })
        except IntegrityError:
            return {"error": "Order already recorded", "is_error": True, "status": 409}

        logger.info(f"Recorded PayPal order {order_id} for user {principal.user_id}, plan {plan}")
        return {
            "data": {"orderId": payment.paypal_order_id, "status": payment.status, "planType": payment.plan_type},
            "is_error": False,
        }
