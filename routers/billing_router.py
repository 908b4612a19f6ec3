"""
Billing Router - provider webhooks, verification, checkout and cancellation
Webhooks are defined FIRST to avoid middleware conflicts
"""

import json
import logging
from decimal import Decimal
from typing import Optional

import stripe
from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth import get_current_principal
from backend.auth.user import Principal
from backend.utils.responses import success_response, error_response, webhook_ack
from config import settings
from crud.subscription import SubscriptionRepository
from database import get_db, get_session_factory
from services.billing_service import BillingService
from services.entitlement import format_timestamp
from services.outbound_webhooks import dispatch_in_background
from services.provider_events import (
    InvalidWebhookPayload,
    ProviderEvent,
    KIND_ACTIVATED,
    KIND_DEACTIVATED,
    KIND_PAYMENT_COMPLETED,
    parse_paypal_payment_event,
    parse_paypal_subscription_event,
    parse_stripe_event,
    parse_whop_event,
)
from services.subscription_service import SubscriptionService
from services.verification_service import VerificationService
from services.whop_client import WhopClient

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])

OUTBOUND_EVENT_BY_KIND = {
    KIND_ACTIVATED: "subscription.activated",
    KIND_PAYMENT_COMPLETED: "subscription.activated",
    KIND_DEACTIVATED: "subscription.cancelled",
}


def get_whop_client() -> WhopClient:
    return WhopClient(settings)


def _serialize_row(row) -> dict:
    return {
        "id": row.id,
        "status": row.status,
        "planType": row.plan_type,
        "provider": row.provider,
        "currentPeriodStart": format_timestamp(row.current_period_start),
        "currentPeriodEnd": format_timestamp(row.current_period_end),
        "cancelledAt": format_timestamp(row.cancelled_at),
        "createdAt": format_timestamp(row.created_at),
    }


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
        raise InvalidWebhookPayload("Request body is not valid JSON") from e
    if not isinstance(body, dict):
        raise InvalidWebhookPayload("Request body must be a JSON object")
    return body


async def _ingest(
    event: ProviderEvent,
    db: AsyncSession,
    background_tasks: BackgroundTasks,
    session_factory: async_sessionmaker,
) -> JSONResponse:
    """
    Apply a normalised event and acknowledge it.

    Only a failing store write produces a 5xx; ignored and uncorrelated events
    are acknowledged with 200 so providers stop retrying them.
    """
    logger.info(f"{event.provider} webhook received: {event.event_type} (external_id={event.external_id})")
    try:
        result = await SubscriptionService(db).apply_event(event)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"{event.provider} webhook {event.event_type} failed to update the store: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Failed to update subscription"})

    outbound_event = OUTBOUND_EVENT_BY_KIND.get(event.kind)
    if result["processed"] and result["user_id"] and outbound_event:
        background_tasks.add_task(
            dispatch_in_background,
            session_factory,
            result["user_id"],
            outbound_event,
            {"provider": event.provider, "plan_type": event.plan_type},
        )

    return webhook_ack(event.event_type, result["processed"], note=result["note"])


# WEBHOOK ENDPOINTS - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhooks/paypal")
async def paypal_subscription_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    PayPal BILLING.SUBSCRIPTION.* events.
    """
    try:
        event = parse_paypal_subscription_event(await _read_json(request))
    except InvalidWebhookPayload as e:
        logger.error(f"Invalid PayPal webhook: {e}")
        return error_response(str(e), status=400)

    return await _ingest(event, db, background_tasks, session_factory)


@billing_router.post("/webhooks/paypal-payment")
async def paypal_payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    PayPal CHECKOUT.ORDER.* and PAYMENT.CAPTURE.* events for one-off plan purchases.
    """
    try:
        event = parse_paypal_payment_event(await _read_json(request))
    except InvalidWebhookPayload as e:
        logger.error(f"Invalid PayPal payment webhook: {e}")
        return error_response(str(e), status=400)

    return await _ingest(event, db, background_tasks, session_factory)


@billing_router.post("/webhooks/whop")
async def whop_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Whop membership.went_valid / membership.renewed / membership.went_invalid events.
    """
    try:
        event = parse_whop_event(await _read_json(request))
    except InvalidWebhookPayload as e:
        logger.error(f"Invalid Whop webhook: {e}")
        return error_response(str(e), status=400)

    return await _ingest(event, db, background_tasks, session_factory)


@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Handle Stripe webhook events with signature verification.

    Only verified events are processed to prevent spoofing attacks.
    Always returns 200 OK to Stripe to prevent retries.
    """
    webhook_secret = settings.stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": "Webhook secret not configured"}
        )

    # Raw body is required for signature verification
    payload = await request.body()

    stripe_signature = request.headers.get("stripe-signature")
    if not stripe_signature:
        logger.error("Missing Stripe-Signature header")
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": "Missing signature header"}
        )

    try:
        stripe.Webhook.construct_event(payload, stripe_signature, webhook_secret)
        event = parse_stripe_event(json.loads(payload))
    except stripe.SignatureVerificationError as e:
        logger.error(f"Stripe webhook signature verification failed: {e}")
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": "Invalid webhook signature"}
        )
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": "Invalid payload format"}
        )

    response = await _ingest(event, db, background_tasks, session_factory)
    ok = response.status_code == 200
    if not ok:
        # Stripe retries non-2xx; the failure is already logged
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "event_type": event.event_type}
        )
    return JSONResponse(
        status_code=200,
        content={"ok": True, "received": True, "event_type": event.event_type}
    )


class VerifyRequest(BaseModel):
    email: Optional[str] = None
    strict: bool = False


@billing_router.post("/verify")
async def verify_subscription(
    body: Optional[VerifyRequest] = Body(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    whop: WhopClient = Depends(get_whop_client),
):
    """
    Cross-check the caller's entitlement with Whop, repairing the store on a match.

    Always answers with a well-formed entitlement body.
    """
    body = body or VerifyRequest()
    try:
        return await VerificationService(db, whop=whop).verify(principal, email=body.email, strict=body.strict)
    except Exception as e:
        logger.error(f"Error verifying subscription for user {principal.user_id}: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Unable to verify subscription right now",
                "hasActiveSubscription": False,
                "planType": None,
                "status": "error",
                "currentPeriodEnd": None,
            }
        )


@billing_router.get("/subscription")
async def get_subscription_status(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Entitlement of the caller, read from the subscription store only."""
    entitlement = await SubscriptionService(db).get_entitlement(principal.user_id, is_admin=principal.is_admin)
    return entitlement.to_response()


@billing_router.get("/history")
async def get_subscription_history(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    rows = await SubscriptionRepository(db).list_history(principal.user_id)
    return success_response({"subscriptions": [_serialize_row(row) for row in rows]})


@billing_router.get("/plan-ids")
async def get_plan_ids(db: AsyncSession = Depends(get_db)):
    return BillingService(db).plan_ids()


class CheckoutRequest(BaseModel):
    plan: str


def _service_result(result: dict) -> JSONResponse:
    if result.get("is_error"):
        return error_response(result.get("error", "Unknown error"), status=result.get("status", 400))
    return success_response(result["data"])


@billing_router.post("/checkout/whop")
async def create_whop_checkout(
    body: CheckoutRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    whop: WhopClient = Depends(get_whop_client),
):
    result = await BillingService(db, whop=whop).create_whop_checkout(principal, body.plan)
    return _service_result(result)


@billing_router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a Stripe Checkout session for the caller.
    """
    result = await BillingService(db).create_checkout_session(principal, body.plan)
    return _service_result(result)


class PayPalOrderRequest(BaseModel):
    plan: str
    paypal_order_id: str
    amount: Decimal
    currency: str = "USD"


@billing_router.post("/checkout/paypal")
async def record_paypal_order(
    body: PayPalOrderRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Record the order the PayPal button just created, before the buyer approves it.
    """
    result = await BillingService(db).record_paypal_order(
        principal, body.plan, body.paypal_order_id, body.amount, body.currency
    )
    return _service_result(result)


@billing_router.post("/portal")
async def create_billing_portal_session(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a Stripe Billing Portal session for the caller's card subscription.
    """
    result = await BillingService(db).create_billing_portal_session(principal)
    return _service_result(result)


@billing_router.post("/cancel")
async def cancel_subscription(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    whop: WhopClient = Depends(get_whop_client),
):
    """Cancel the caller's Whop membership at period end."""
    result = await BillingService(db, whop=whop).cancel_whop_subscription(principal)
    return _service_result(result)
