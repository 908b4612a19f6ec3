"""
Whop API client - membership lookup, cancellation and checkout sessions
"""

import logging
from typing import Optional, List

import httpx

from config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A payment provider call failed (unconfigured, transport, timeout or non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class WhopClient:
    """
    Thin async wrapper around the Whop v2 REST API.
    A fresh httpx.AsyncClient is used per call; a transport can be injected for tests.
    """

    def __init__(self, settings: Settings = default_settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.settings.whop_api_key)

    def _client(self) -> httpx.AsyncClient:
        if not self.configured:
            raise ProviderError("Whop API key not configured")
        return httpx.AsyncClient(
            base_url=self.settings.whop_api_base.rstrip("/"),
            headers={"Authorization": f"Bearer {self.settings.whop_api_key}"},
            timeout=self.settings.provider_timeout_seconds,
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        async with self._client() as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                raise ProviderError(f"Whop request timed out: {method} {path}") from e
            except httpx.HTTPError as e:
                raise ProviderError(f"Whop request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Whop API error {response.status_code} on {method} {path}: {response.text[:500]}")
            raise ProviderError(f"Whop API error: {response.status_code}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("Whop returned a non-JSON response") from e

    async def list_memberships(self, email: str) -> List[dict]:
        """Memberships Whop holds for an email address."""
        payload = await self._request("GET", "/memberships", params={"email": email})
        data = payload.get("data") if isinstance(payload, dict) else None
        return [m for m in (data or []) if isinstance(m, dict)]

    async def cancel_membership(self, membership_id: str, at_period_end: bool = True) -> dict:
        return await self._request(
            "POST",
            f"/memberships/{membership_id}/cancel",
            json={"cancel_at_period_end": at_period_end},
        )

    async def create_checkout_session(self, plan_id: str, email: Optional[str], metadata: dict,
                                      success_url: str, cancel_url: str) -> dict:
        return await self._request(
            "POST",
            "/checkout_sessions",
            json={
                "company_id": self.settings.whop_company_id,
                "plan_id": plan_id,
                "customer_email": email,
                "metadata": metadata,
                "success_url": success_url,
                "cancel_url": cancel_url,
            },
        )

    async def get_checkout_session(self, session_id: str) -> dict:
        return await self._request("GET", f"/checkout_sessions/{session_id}")
