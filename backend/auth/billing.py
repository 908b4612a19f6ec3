import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_optional_principal
from backend.auth.user import Principal
from database import get_db
from services.route_guard import GuardState, SessionContext, decide

logger = logging.getLogger(__name__)


async def require_active_subscription(
    request: Request,
    principal: Optional[Principal] = Depends(get_optional_principal),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Server-side route guard: 401 when signed out, 402 when not entitled."""
    context = SessionContext()
    snapshot = await context.load(db, principal)
    decision = decide(snapshot, request.url.path)

    if decision.state == GuardState.REDIRECT_AUTH:
        raise HTTPException(status_code=401, detail="Missing authentication token")
    if decision.state == GuardState.REDIRECT_BILLING:
        logger.info(f"User {principal.user_id} blocked from {request.url.path}: no active subscription")
        raise HTTPException(status_code=402, detail="An active subscription is required")

    return principal
