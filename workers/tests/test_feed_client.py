from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from staffing_workers.services.feed_client import FeedClient


def _client(handler) -> FeedClient:
    return FeedClient(
        "http://api.test/",
        "bonus-worker",
        "bonus-worker-key",
        timeout_seconds=2.0,
        transport=httpx.MockTransport(handler),
    )


def test_claim_sends_machine_headers_and_camel_case_body() -> None:
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = dict(request.headers)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=[{"eventId": "1", "eventName": "INSERT"}], request=request)

    changes = asyncio.run(_client(handler).claim_changes(limit=25, lease_seconds=120))

    assert changes == [{"eventId": "1", "eventName": "INSERT"}]
    assert seen["url"] == "http://api.test/streams/applications/claim"
    assert seen["headers"]["x-module-id"] == "bonus-worker"
    assert seen["headers"]["x-api-key"] == "bonus-worker-key"
    assert seen["body"] == {"limit": 25, "leaseSeconds": 120}


def test_ack_skips_the_call_for_an_empty_batch() -> None:
    calls: list[dict[str, Any]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return httpx.Response(200, json={"acknowledged": 2}, request=request)

    client = _client(handler)
    assert asyncio.run(client.ack_changes([])) == 0
    assert asyncio.run(client.ack_changes(["4", "5"])) == 2
    assert calls == [{"eventIds": ["4", "5"]}]


def test_missing_referral_is_none_and_path_is_quoted() -> None:
    paths: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.raw_path.decode("ascii"))
        return httpx.Response(404, json={"detail": {"code": "not_found"}}, request=request)

    assert asyncio.run(_client(handler).get_referral("user/with space")) is None
    assert paths == ["/referrals/user%2Fwith%20space"]


def test_award_posts_event_id_and_raises_on_server_error() -> None:
    bodies: list[dict[str, Any]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        if len(bodies) == 1:
            return httpx.Response(
                200,
                json={"referrerUserSub": "referrer-1", "applied": True, "referralBonus": 50.0},
                request=request,
            )
        return httpx.Response(503, json={"detail": "database unavailable"}, request=request)

    client = _client(handler)
    result = asyncio.run(client.award_bonus(referrer_user_sub="referrer-1", amount=50.0, event_id="7"))
    assert result["applied"] is True
    assert bodies[0] == {"eventId": "7", "amount": 50.0}

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(client.award_bonus(referrer_user_sub="referrer-1", amount=50.0, event_id="8"))
