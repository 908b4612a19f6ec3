"""
Webhooks Router - user-managed outbound webhook configurations and manual triggering
"""

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_principal
from backend.auth.billing import require_active_subscription
from backend.auth.user import Principal
from backend.utils.responses import success_response, error_response
from crud.webhook_config import WebhookConfigRepository
from database import get_db
from services.outbound_webhooks import OutboundWebhookService
from utils.validation import validate_webhook_url

logger = logging.getLogger(__name__)

# Create webhooks router
webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookConfigRequest(BaseModel):
    name: str
    webhook_url: str
    events: List[str] = Field(default_factory=list)
    secret: Optional[str] = None
    is_active: bool = True


class TriggerRequest(BaseModel):
    user_id: Optional[str] = None
    event_type: Optional[str] = None
    event_data: Any = None


def _serialize(hook) -> dict:
    # The secret is write-only
    return {
        "id": hook.id,
        "name": hook.name,
        "webhook_url": hook.webhook_url,
        "events": hook.events or [],
        "is_active": bool(hook.is_active),
        "has_secret": bool(hook.secret),
        "created_at": hook.created_at.isoformat() if hook.created_at else None,
    }


@webhooks_router.get("")
async def list_webhooks(
    principal: Principal = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
):
    hooks = await WebhookConfigRepository(db).list_for_user(principal.user_id)
    return success_response({"webhooks": [_serialize(h) for h in hooks]})


@webhooks_router.post("")
async def create_webhook(
    request: WebhookConfigRequest,
    principal: Principal = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
):
    """Register a callback URL for one or more events."""
    if not request.name.strip():
        return error_response("Webhook name is required", status=400)
    try:
        validate_webhook_url(request.webhook_url)
    except ValueError as e:
        return error_response(str(e), status=400)

    hook = await WebhookConfigRepository(db).create(principal.user_id, request.model_dump())
    logger.info(f"User {principal.user_id} registered webhook {hook.id} for {hook.events}")
    return success_response({"webhook": _serialize(hook)}, status=201)


@webhooks_router.delete("/{webhook_id}")
async def delete_webhook(
    webhook_id: int,
    principal: Principal = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
):
    repo = WebhookConfigRepository(db)
    hook = await repo.get_for_user(principal.user_id, webhook_id)
    if hook is None:
        return error_response("Webhook not found", status=404)
    await repo.delete(hook)
    return success_response({"deleted": webhook_id})


@webhooks_router.post("/trigger")
async def trigger_webhooks(
    request: TriggerRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Deliver an event to every active configuration of a user.

    Callers trigger their own webhooks; only admins may name another user.
    Individual delivery failures are reported in the summary, not as an error.
    """
    if not request.event_type:
        return error_response("Missing eventType", status=400)

    user_id = request.user_id or principal.user_id
    if user_id != principal.user_id and not principal.is_admin:
        logger.warning(f"User {principal.user_id} tried to trigger webhooks of user {user_id}")
        return error_response("Cannot trigger webhooks for another user", status=403)

    result = await OutboundWebhookService(db).trigger(user_id, request.event_type, request.event_data)
    return success_response(result)
