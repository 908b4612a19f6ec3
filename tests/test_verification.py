"""
Tests for user-initiated verification against Whop
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from backend.auth.user import Principal
from config import Settings
from crud.subscription import SubscriptionRepository
from services.entitlement import parse_timestamp
from services.verification_service import VerificationService, is_membership_active
from services.whop_client import WhopClient, ProviderError
from tests.conftest import create_user, add_subscription

NOW = datetime.now(timezone.utc).replace(microsecond=0)
SETTINGS = Settings(WHOP_API_KEY="whop_test_key", WHOP_PLAN_ID_AGENCY="plan_agency")


def _whop(memberships=None, error=None):
    whop = AsyncMock(spec=WhopClient)
    whop.configured = True
    if error is not None:
        whop.list_memberships.side_effect = error
    else:
        whop.list_memberships.return_value = memberships or []
    return whop


def _membership(**overrides):
    membership = {
        "id": "mem_1",
        "status": "active",
        "valid": True,
        "plan_id": "plan_agency",
        "renewal_period_end": int((NOW + timedelta(days=20)).timestamp()),
    }
    membership.update(overrides)
    return membership


@pytest.mark.parametrize("overrides, expected", [
    ({}, True),
    ({"valid": False}, False),
    ({"valid": "true"}, False),
    ({"status": "trialing"}, False),
    ({"renewal_period_end": int((NOW - timedelta(days=1)).timestamp())}, False),
    ({"renewal_period_end": None}, False),
])
def test_membership_activity_rule(overrides, expected):
    assert is_membership_active(_membership(**overrides), NOW) is expected


def test_valid_until_iso_string_is_accepted():
    membership = _membership(renewal_period_end=None, valid_until=(NOW + timedelta(days=1)).isoformat())

    assert is_membership_active(membership, NOW) is True


@pytest.mark.asyncio
async def test_admin_short_circuits_provider(test_db, session_factory):
    user_id = await create_user(session_factory, "admin@example.com", is_admin=True)
    whop = _whop()

    result = await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
        Principal(user_id=user_id, email="admin@example.com", is_admin=True), now=NOW
    )

    assert result["hasActiveSubscription"] is True
    assert result["source"] == "admin"
    assert result["version"] == "2"
    whop.list_memberships.assert_not_called()


@pytest.mark.asyncio
async def test_active_store_row_answers_without_provider(test_db, session_factory):
    user_id = await create_user(session_factory, "buyer@example.com")
    await add_subscription(session_factory, user_id, period_end=NOW + timedelta(days=3))
    whop = _whop()

    result = await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
        Principal(user_id=user_id, email="buyer@example.com"), now=NOW
    )

    assert result["hasActiveSubscription"] is True
    assert result["planType"] == "agency"
    assert result["source"] == "store"
    whop.list_memberships.assert_not_called()


@pytest.mark.asyncio
async def test_valid_membership_is_written_through(test_db, session_factory):
    user_id = await create_user(session_factory, "buyer@example.com")
    whop = _whop([_membership(status="expired", valid=False, id="mem_old"), _membership()])

    result = await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
        Principal(user_id=user_id, email="buyer@example.com"), now=NOW
    )

    assert result["hasActiveSubscription"] is True
    assert result["planType"] == "agency"
    assert result["source"] == "provider"
    whop.list_memberships.assert_awaited_once_with("buyer@example.com")

    row = await SubscriptionRepository(test_db).get_current(user_id)
    assert row.status == "active"
    assert row.provider == "whop"
    assert row.external_subscription_id == "mem_1"
    assert parse_timestamp(row.current_period_end) == NOW + timedelta(days=20)


@pytest.mark.asyncio
async def test_provider_failure_degrades_to_store(test_db, session_factory):
    user_id = await create_user(session_factory, "buyer@example.com")
    whop = _whop(error=ProviderError("Whop request timed out"))

    result = await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
        Principal(user_id=user_id, email="buyer@example.com"), now=NOW
    )

    assert result == {
        "hasActiveSubscription": False,
        "status": "none",
        "planType": None,
        "currentPeriodEnd": None,
        "source": "store",
        "version": "2",
    }


@pytest.mark.asyncio
async def test_unconfigured_provider_answers_from_store(test_db, session_factory):
    user_id = await create_user(session_factory, "buyer@example.com")
    whop = _whop()
    whop.configured = False

    result = await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
        Principal(user_id=user_id, email="buyer@example.com"), now=NOW
    )

    assert result["source"] == "store"
    whop.list_memberships.assert_not_called()


@pytest.mark.asyncio
async def test_foreign_email_in_request_is_not_used(test_db, session_factory):
    user_id = await create_user(session_factory, "buyer@example.com")
    whop = _whop()

    await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
        Principal(user_id=user_id, email="buyer@example.com"), email="victim@example.com", now=NOW
    )

    whop.list_memberships.assert_awaited_once_with("buyer@example.com")


@pytest.mark.asyncio
async def test_strict_check_cancels_stale_whop_row(test_db, session_factory):
    user_id = await create_user(session_factory, "buyer@example.com")
    await add_subscription(session_factory, user_id, period_end=NOW + timedelta(days=3), provider="whop")
    whop = _whop([_membership(valid=False)])

    result = await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
        Principal(user_id=user_id, email="buyer@example.com"), strict=True, now=NOW
    )

    assert result["hasActiveSubscription"] is False
    row = await SubscriptionRepository(test_db).get_current(user_id)
    assert row.status == "cancelled"


@pytest.mark.asyncio
async def test_strict_check_leaves_other_providers_alone(test_db, session_factory):
    user_id = await create_user(session_factory, "buyer@example.com")
    await add_subscription(session_factory, user_id, period_end=NOW + timedelta(days=3), provider="paypal")
    whop = _whop([])

    result = await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
        Principal(user_id=user_id, email="buyer@example.com"), strict=True, now=NOW
    )

    assert result["hasActiveSubscription"] is True
    assert result["source"] == "store"


@pytest.mark.asyncio
async def test_strict_repair_store_failure_answers_from_store(test_db, session_factory):
    from sqlalchemy.exc import OperationalError

    user_id = await create_user(session_factory, "buyer@example.com")
    await add_subscription(session_factory, user_id, period_end=NOW + timedelta(days=3), provider="whop")
    whop = _whop([])
    failing = AsyncMock(side_effect=OperationalError("UPDATE subscriptions", {}, Exception("database is locked")))

    with patch("services.subscription_service.SubscriptionService.deactivate", failing):
        result = await VerificationService(test_db, whop=whop, settings=SETTINGS).verify(
            Principal(user_id=user_id, email="buyer@example.com"), strict=True, now=NOW
        )

    failing.assert_awaited_once()
    assert result["source"] == "store"
    assert result["status"] in ("active", "cancelled", "pending", "none")
    assert result["hasActiveSubscription"] is True
