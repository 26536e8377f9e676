from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx


class FeedClient:
    """Machine-authenticated calls the bonus worker makes against the API."""

    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def claim_changes(self, *, limit: int, lease_seconds: int) -> list[dict[str, Any]]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/streams/applications/claim",
                json={"limit": limit, "leaseSeconds": lease_seconds},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def ack_changes(self, event_ids: list[str]) -> int:
        if not event_ids:
            return 0
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/streams/applications/ack",
                json={"eventIds": event_ids},
                headers=self.headers,
            )
            response.raise_for_status()
            return int(response.json().get("acknowledged", 0))

    async def get_referral(self, referred_user_sub: str) -> dict[str, Any] | None:
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}/referrals/{quote(referred_user_sub, safe='')}",
                headers=self.headers,
            )
            if response.status_code == httpx.codes.NOT_FOUND:
                return None
            response.raise_for_status()
            return response.json()

    async def award_bonus(self, *, referrer_user_sub: str, amount: float, event_id: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/referrals/{quote(referrer_user_sub, safe='')}/bonus",
                json={"eventId": event_id, "amount": amount},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)
