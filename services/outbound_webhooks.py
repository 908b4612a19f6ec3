"""
Outbound Webhook Service - delivers events to callback URLs users registered themselves
"""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings as default_settings
from crud.webhook_config import WebhookConfigRepository
from database_models import WebhookConfiguration
from services.entitlement import utcnow

logger = logging.getLogger(__name__)

USER_AGENT = "ProposalKraft-Webhooks/1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the exact bytes that are sent."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_payload(event_type: str, event_data: Any) -> dict:
    return {
        "event": event_type,
        "timestamp": utcnow().isoformat(),
        "data": event_data,
    }


class OutboundWebhookService:
    """
    Fans one event out to every active configuration subscribed to it.
    Deliveries run concurrently; one failing endpoint never affects the others.
    """

    def __init__(self, db: AsyncSession, settings: Settings = default_settings,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.db = db
        self.settings = settings
        self.transport = transport
        self.webhooks = WebhookConfigRepository(db)

    async def _deliver(self, client: httpx.AsyncClient, hook: WebhookConfiguration, body: bytes) -> dict:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if hook.secret:
            headers[SIGNATURE_HEADER] = sign_payload(hook.secret, body)

        response = await client.post(hook.webhook_url, content=body, headers=headers)
        if response.status_code >= 400:
            raise RuntimeError(f"Webhook failed: {response.status_code} {response.reason_phrase}")

        return {"webhook_id": hook.id, "webhook_name": hook.name, "status": "success"}

    async def trigger(self, user_id: str, event_type: str, event_data: Any = None) -> dict:
        """
        Returns:
            {success, message, total, succeeded, failed, failures?}
        """
        hooks = await self.webhooks.list_active_for_event(user_id, event_type)
        if not hooks:
            return {"success": True, "message": "No webhooks configured for this event", "total": 0,
                    "succeeded": 0, "failed": 0}

        payload = build_payload(event_type, event_data)
        body = json.dumps(payload, default=str).encode("utf-8")

        async with httpx.AsyncClient(timeout=self.settings.provider_timeout_seconds,
                                     transport=self.transport) as client:
            results = await asyncio.gather(
                *(self._deliver(client, hook, body) for hook in hooks),
                return_exceptions=True,
            )

        failures = []
        for hook, result in zip(hooks, results):
            if isinstance(result, BaseException):
                logger.warning(f"Webhook {hook.id} ({hook.name}) for user {user_id} failed: {result}")
                failures.append({"webhook": hook.name, "error": str(result) or result.__class__.__name__})

        succeeded = len(hooks) - len(failures)
        response = {
            "success": True,
            "message": f"Triggered {succeeded} webhooks successfully",
            "total": len(hooks),
            "succeeded": succeeded,
            "failed": len(failures),
        }
        if failures:
            response["failures"] = failures
        return response


async def dispatch_in_background(session_factory, user_id: str, event_type: str, event_data: Any = None) -> None:
    """
    Background-task entry point: opens its own session, never raises.
    """
    try:
        async with session_factory() as session:
            result = await OutboundWebhookService(session).trigger(user_id, event_type, event_data)
            logger.info(f"Outbound {event_type} for user {user_id}: {result['succeeded']}/{result['total']} delivered")
    except Exception as e:
        logger.error(f"Outbound webhook dispatch for user {user_id} failed: {e}", exc_info=True)
