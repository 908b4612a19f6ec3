"""
Entitlement evaluation - collapses a subscription row into one access decision
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_PENDING = "pending"
STATUS_NONE = "none"


class EntitlementStatus(BaseModel):
    """Canonical entitlement of one user at one instant."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    has_active_subscription: bool = Field(default=False, alias="hasActiveSubscription")
    status: str = STATUS_NONE
    plan_type: Optional[str] = Field(default=None, alias="planType")
    current_period_end: Optional[str] = Field(default=None, alias="currentPeriodEnd")

    def to_response(self) -> dict:
        return self.model_dump(by_alias=True)


NO_ENTITLEMENT = EntitlementStatus()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a stored or provider timestamp into an aware UTC datetime.

    Accepts datetime objects and ISO-8601 strings (a trailing "Z" is allowed).
    Naive values are read as UTC. Returns None for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_epoch_seconds(value: Any) -> Optional[datetime]:
    """Provider epoch-second timestamps (int, float or numeric string)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed else None


def _field(row: Any, name: str) -> Any:
    if row is None:
        return None
    if isinstance(row, dict):
        return row.get(name)
    return getattr(row, name, None)


def is_row_active(row: Any, now: Optional[datetime] = None) -> bool:
    """
    status == "active" AND current_period_end parses AND current_period_end > now.

    cancelled_at is never consulted: a cancelled row is inactive at once, even
    when its period has not yet run out.
    """
    if row is None or _field(row, "status") != STATUS_ACTIVE:
        return False
    period_end = parse_timestamp(_field(row, "current_period_end"))
    if period_end is None:
        return False
    return period_end > (parse_timestamp(now) if now else utcnow())


def evaluate_entitlement(row: Any, now: Optional[datetime] = None, is_admin: bool = False) -> EntitlementStatus:
    """
    Evaluate the newest subscription row of a user.

    Args:
        row: Subscription model, mapping with the same keys, or None
        now: Wall-clock time to evaluate against (defaults to current UTC time)
        is_admin: Administrators are always entitled

    Returns:
        EntitlementStatus; an inactive row never leaks its plan type
    """
    active = is_row_active(row, now)

    if is_admin:
        return EntitlementStatus(
            has_active_subscription=True,
            status=STATUS_ACTIVE,
            plan_type=_field(row, "plan_type") if active else None,
            current_period_end=format_timestamp(_field(row, "current_period_end")) if active else None,
        )

    if not active:
        return NO_ENTITLEMENT

    return EntitlementStatus(
        has_active_subscription=True,
        status=STATUS_ACTIVE,
        plan_type=_field(row, "plan_type"),
        current_period_end=format_timestamp(_field(row, "current_period_end")),
    )
