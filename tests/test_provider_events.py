"""
Unit tests for provider webhook normalisation
"""
from datetime import datetime, timezone

import pytest

from config import Settings
from services.provider_events import (
    InvalidWebhookPayload,
    KIND_ACTIVATED,
    KIND_DEACTIVATED,
    KIND_IGNORED,
    KIND_PAYMENT_COMPLETED,
    KIND_RENEWED,
    parse_paypal_payment_event,
    parse_paypal_subscription_event,
    parse_stripe_event,
    parse_whop_event,
)

PLAN_SETTINGS = Settings(
    PAYPAL_PLAN_ID_AGENCY="P-AGENCY",
    WHOP_PLAN_ID_ENTERPRISE="plan_ent",
    STRIPE_PRICE_ID_ENTERPRISE="price_ent",
)


def test_paypal_activation_is_normalised():
    event = parse_paypal_subscription_event({
        "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
        "resource": {
            "id": "I-123",
            "plan_id": "P-AGENCY",
            "custom_id": "user-1",
            "subscriber": {"email_address": "buyer@example.com"},
            "billing_info": {"next_billing_time": "2026-04-01T00:00:00Z"},
        },
    }, PLAN_SETTINGS)

    assert event.kind == KIND_ACTIVATED
    assert event.user_id == "user-1"
    assert event.email == "buyer@example.com"
    assert event.external_id == "I-123"
    assert event.plan_type == "agency"
    assert event.period_end == datetime(2026, 4, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("event_type", [
    "BILLING.SUBSCRIPTION.CANCELLED",
    "BILLING.SUBSCRIPTION.SUSPENDED",
    "BILLING.SUBSCRIPTION.EXPIRED",
])
def test_paypal_invalidations_deactivate(event_type):
    event = parse_paypal_subscription_event({"event_type": event_type, "resource": {"id": "I-1"}})

    assert event.kind == KIND_DEACTIVATED


def test_paypal_unknown_plan_defaults_to_freelance():
    event = parse_paypal_subscription_event({
        "event_type": "BILLING.SUBSCRIPTION.RENEWED",
        "resource": {"id": "I-1", "plan_id": "P-UNKNOWN"},
    }, PLAN_SETTINGS)

    assert event.kind == KIND_RENEWED
    assert event.plan_type == "freelance"
    assert event.period_end is None


@pytest.mark.parametrize("body", [{}, {"event_type": "X"}, {"resource": {}}, {"resource": {"custom_id": "u"}}, []])
def test_paypal_missing_resource_id_is_rejected(body):
    with pytest.raises(InvalidWebhookPayload):
        parse_paypal_subscription_event(body)


def test_paypal_unhandled_event_is_ignored():
    event = parse_paypal_subscription_event({"event_type": "BILLING.PLAN.CREATED", "resource": {"id": "P-1"}})

    assert event.is_ignored


def test_paypal_capture_uses_related_order_id():
    event = parse_paypal_payment_event({
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAPTURE-1",
            "supplementary_data": {"related_ids": {"order_id": "ORDER-9"}},
        },
    })

    assert event.kind == KIND_PAYMENT_COMPLETED
    assert event.external_id == "ORDER-9"


def test_paypal_order_event_uses_its_own_id():
    event = parse_paypal_payment_event({"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "ORDER-1"}})

    assert event.external_id == "ORDER-1"


def test_whop_went_valid_reads_metadata_and_renewal_end():
    event = parse_whop_event({
        "action": "membership.went_valid",
        "data": {
            "id": "mem_1",
            "plan_id": "plan_ent",
            "metadata": {"user_id": "user-1"},
            "email": "buyer@example.com",
            "renewal_period_end": 1767225600,
        },
    }, PLAN_SETTINGS)

    assert event.kind == KIND_ACTIVATED
    assert event.user_id == "user-1"
    assert event.external_id == "mem_1"
    assert event.plan_type == "enterprise"
    assert event.period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_whop_falls_back_to_expiry_and_default_plan():
    event = parse_whop_event({
        "type": "membership.renewed",
        "data": {"id": "mem_1", "user": {"email": "buyer@example.com"}, "expires_at": "1767225600"},
    })

    assert event.kind == KIND_RENEWED
    assert event.email == "buyer@example.com"
    assert event.plan_type == "dealcloser"
    assert event.period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_whop_unknown_action_is_ignored():
    assert parse_whop_event({"action": "payment.succeeded", "data": {}}).kind == KIND_IGNORED


def test_stripe_subscription_status_decides_kind():
    base = {
        "id": "sub_1",
        "metadata": {"user_id": "user-1"},
        "current_period_end": 1767225600,
        "items": {"data": [{"price": {"id": "price_ent"}}]},
    }
    active = parse_stripe_event(
        {"type": "customer.subscription.updated", "data": {"object": {**base, "status": "trialing"}}},
        PLAN_SETTINGS,
    )
    past_due = parse_stripe_event(
        {"type": "customer.subscription.updated", "data": {"object": {**base, "status": "past_due"}}},
        PLAN_SETTINGS,
    )

    assert active.kind == KIND_ACTIVATED
    assert active.plan_type == "enterprise"
    assert active.period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert past_due.kind == KIND_DEACTIVATED


def test_stripe_invoice_paid_renews_with_line_period():
    event = parse_stripe_event({
        "type": "invoice.paid",
        "data": {"object": {
            "subscription": "sub_1",
            "customer_email": "buyer@example.com",
            "lines": {"data": [{"period": {"start": 1764547200, "end": 1767225600}}]},
        }},
    })

    assert event.kind == KIND_RENEWED
    assert event.external_id == "sub_1"
    assert event.email == "buyer@example.com"
    assert event.period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_stripe_other_events_are_ignored():
    assert parse_stripe_event({"type": "charge.refunded", "data": {"object": {}}}).is_ignored


@pytest.mark.parametrize("status", ["incomplete", "incomplete_expired"])
def test_stripe_unpaid_first_invoice_is_ignored(status):
    event = parse_stripe_event({
        "type": "customer.subscription.created",
        "data": {"object": {"id": "sub_123", "status": status, "metadata": {"user_id": "user-1"}}},
    })

    assert event.is_ignored
