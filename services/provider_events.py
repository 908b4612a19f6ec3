"""
Provider event normalisation.

PayPal, Whop and Stripe each post their own envelope shape. Every envelope is
turned into one ProviderEvent here, so the subscription mutation logic never
sees provider-specific payloads.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from config import Settings, settings as default_settings, PLAN_FREELANCE, PLAN_DEALCLOSER
from services.entitlement import parse_timestamp, parse_epoch_seconds


PROVIDER_PAYPAL = "paypal"
PROVIDER_WHOP = "whop"
PROVIDER_STRIPE = "stripe"

KIND_ACTIVATED = "activated"
KIND_RENEWED = "renewed"
KIND_DEACTIVATED = "deactivated"
KIND_PAYMENT_COMPLETED = "payment_completed"
KIND_PAYMENT_PENDING = "payment_pending"
KIND_PAYMENT_FAILED = "payment_failed"
KIND_PAYMENT_CANCELLED = "payment_cancelled"
KIND_IGNORED = "ignored"

PAYMENT_KINDS = (KIND_PAYMENT_COMPLETED, KIND_PAYMENT_PENDING, KIND_PAYMENT_FAILED, KIND_PAYMENT_CANCELLED)

PAYPAL_SUBSCRIPTION_EVENTS = {
    "BILLING.SUBSCRIPTION.ACTIVATED": KIND_ACTIVATED,
    "BILLING.SUBSCRIPTION.RENEWED": KIND_RENEWED,
    "BILLING.SUBSCRIPTION.UPDATED": KIND_RENEWED,
    "BILLING.SUBSCRIPTION.CANCELLED": KIND_DEACTIVATED,
    "BILLING.SUBSCRIPTION.SUSPENDED": KIND_DEACTIVATED,
    "BILLING.SUBSCRIPTION.EXPIRED": KIND_DEACTIVATED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": KIND_DEACTIVATED,
}

PAYPAL_PAYMENT_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": KIND_PAYMENT_COMPLETED,
    "CHECKOUT.ORDER.APPROVED": KIND_PAYMENT_PENDING,
    "PAYMENT.CAPTURE.DECLINED": KIND_PAYMENT_FAILED,
    "PAYMENT.CAPTURE.FAILED": KIND_PAYMENT_FAILED,
    "CHECKOUT.ORDER.CANCELLED": KIND_PAYMENT_CANCELLED,
}

WHOP_EVENTS = {
    "membership.went_valid": KIND_ACTIVATED,
    "membership.renewed": KIND_RENEWED,
    "membership.went_invalid": KIND_DEACTIVATED,
}

STRIPE_ACTIVE_STATUSES = ("active", "trialing")
# First invoice not paid yet; the subscription never granted access
STRIPE_UNSTARTED_STATUSES = ("incomplete", "incomplete_expired")


class InvalidWebhookPayload(ValueError):
    """Envelope is malformed; rejected with a 4xx rather than coerced."""


@dataclass(frozen=True)
class ProviderEvent:
    provider: str
    event_type: str
    kind: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    external_id: Optional[str] = None
    plan_type: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @property
    def is_ignored(self) -> bool:
        return self.kind == KIND_IGNORED


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def plan_type_for(provider_plan_id: Optional[str], plan_ids: dict, default: str) -> str:
    """Reverse-map a provider plan id onto an internal plan type."""
    if provider_plan_id:
        for plan_type, configured_id in plan_ids.items():
            if configured_id and configured_id == provider_plan_id:
                return plan_type
    return default


def parse_paypal_subscription_event(body: dict, settings: Settings = default_settings) -> ProviderEvent:
    """
    Normalise a PayPal BILLING.SUBSCRIPTION.* webhook.

    Raises:
        InvalidWebhookPayload: resource or resource.id is missing
    """
    event_type = _str_or_none(_dict(body).get("event_type")) or ""
    resource = _dict(_dict(body).get("resource"))
    if not resource or not resource.get("id"):
        raise InvalidWebhookPayload("Invalid webhook data: missing resource or resource.id")

    kind = PAYPAL_SUBSCRIPTION_EVENTS.get(event_type, KIND_IGNORED)
    subscriber = _dict(resource.get("subscriber"))
    billing_info = _dict(resource.get("billing_info"))

    return ProviderEvent(
        provider=PROVIDER_PAYPAL,
        event_type=event_type,
        kind=kind,
        user_id=_str_or_none(resource.get("custom_id")),
        email=_str_or_none(subscriber.get("email_address")),
        external_id=str(resource["id"]),
        plan_type=plan_type_for(resource.get("plan_id"), settings.paypal_plan_ids(), PLAN_FREELANCE),
        period_start=parse_timestamp(resource.get("start_time")),
        period_end=parse_timestamp(billing_info.get("next_billing_time")),
    )


def parse_paypal_payment_event(body: dict) -> ProviderEvent:
    """
    Normalise a PayPal CHECKOUT.ORDER.* / PAYMENT.CAPTURE.* webhook.

    The external id is the order id: captures carry it under
    supplementary_data.related_ids, orders carry it as their own id.
    """
    event_type = _str_or_none(_dict(body).get("event_type")) or ""
    resource = _dict(_dict(body).get("resource"))
    if not resource or not resource.get("id"):
        raise InvalidWebhookPayload("Invalid webhook data: missing resource or resource.id")

    related_ids = _dict(_dict(resource.get("supplementary_data")).get("related_ids"))
    order_id = related_ids.get("order_id") or resource["id"]
    payer = _dict(resource.get("payer"))

    return ProviderEvent(
        provider=PROVIDER_PAYPAL,
        event_type=event_type,
        kind=PAYPAL_PAYMENT_EVENTS.get(event_type, KIND_IGNORED),
        user_id=_str_or_none(resource.get("custom_id")),
        email=_str_or_none(payer.get("email_address")),
        external_id=str(order_id),
    )


def parse_whop_event(body: dict, settings: Settings = default_settings) -> ProviderEvent:
    """Normalise a Whop membership.* webhook (action or type, plus data)."""
    body = _dict(body)
    event_type = _str_or_none(body.get("action") or body.get("type")) or ""
    data = _dict(body.get("data"))
    metadata = _dict(data.get("metadata"))
    user = _dict(data.get("user"))

    period_end = parse_epoch_seconds(data.get("renewal_period_end")) or parse_epoch_seconds(data.get("expires_at"))

    return ProviderEvent(
        provider=PROVIDER_WHOP,
        event_type=event_type,
        kind=WHOP_EVENTS.get(event_type, KIND_IGNORED),
        user_id=_str_or_none(metadata.get("user_id")),
        email=_str_or_none(data.get("email") or user.get("email")),
        external_id=_str_or_none(data.get("id")),
        plan_type=plan_type_for(data.get("plan_id"), settings.whop_plan_ids(), PLAN_DEALCLOSER),
        period_start=parse_epoch_seconds(data.get("renewal_period_start")),
        period_end=period_end,
    )


def _stripe_period_end(obj: dict) -> Optional[datetime]:
    period_end = parse_epoch_seconds(obj.get("current_period_end"))
    if period_end:
        return period_end
    # Newer API versions carry the period on the subscription items
    items = _dict(obj.get("items")).get("data") or []
    for item in items:
        period_end = parse_epoch_seconds(_dict(item).get("current_period_end"))
        if period_end:
            return period_end
    return None


def _stripe_price_id(obj: dict) -> Optional[str]:
    items = _dict(obj.get("items")).get("data") or _dict(obj.get("lines")).get("data") or []
    for item in items:
        price = _dict(_dict(item).get("price"))
        if price.get("id"):
            return price["id"]
    return None


def parse_stripe_event(event: dict, settings: Settings = default_settings) -> ProviderEvent:
    """
    Normalise an already signature-verified Stripe event (as a plain dict).
    """
    event = _dict(event)
    event_type = _str_or_none(event.get("type")) or ""
    obj = _dict(_dict(event.get("data")).get("object"))
    metadata = _dict(obj.get("metadata"))
    plan_type = plan_type_for(_stripe_price_id(obj), settings.stripe_price_ids(), PLAN_FREELANCE)

    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        if obj.get("status") in STRIPE_UNSTARTED_STATUSES:
            return ProviderEvent(provider=PROVIDER_STRIPE, event_type=event_type, kind=KIND_IGNORED)
        kind = KIND_ACTIVATED if obj.get("status") in STRIPE_ACTIVE_STATUSES else KIND_DEACTIVATED
        external_id = obj.get("id")
        period_start = parse_epoch_seconds(obj.get("current_period_start"))
        period_end = _stripe_period_end(obj)
    elif event_type == "customer.subscription.deleted":
        kind = KIND_DEACTIVATED
        external_id = obj.get("id")
        period_start = None
        period_end = None
    elif event_type == "invoice.paid":
        kind = KIND_RENEWED
        external_id = obj.get("subscription")
        lines = _dict(obj.get("lines")).get("data") or []
        line_period = _dict(_dict(lines[0]).get("period")) if lines else {}
        period_start = parse_epoch_seconds(line_period.get("start"))
        period_end = parse_epoch_seconds(line_period.get("end"))
        metadata = metadata or _dict(_dict(obj.get("subscription_details")).get("metadata"))
    else:
        return ProviderEvent(provider=PROVIDER_STRIPE, event_type=event_type, kind=KIND_IGNORED)

    return ProviderEvent(
        provider=PROVIDER_STRIPE,
        event_type=event_type,
        kind=kind,
        user_id=_str_or_none(metadata.get("user_id")),
        email=_str_or_none(obj.get("customer_email")),
        external_id=_str_or_none(external_id),
        plan_type=plan_type,
        period_start=period_start,
        period_end=period_end,
    )
