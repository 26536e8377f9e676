from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import pytest
from fastapi.testclient import TestClient

from staffing_api.core.auth import Principal, PrincipalType
from staffing_api.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from staffing_api.services import referrals

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _worker(*scopes: str) -> Principal:
    return Principal(principal_type=PrincipalType.MACHINE, subject="local-bonus-processor", scopes=set(scopes))


def test_referral_registration_rules(store, policy, professional, other_professional) -> None:
    async def scenario() -> None:
        referral = await referrals.register_referral(store, policy, professional, referred_user_sub=" pro-2 ")
        assert referral["referrer_user_sub"] == "pro-1"
        assert referral["referred_user_sub"] == "pro-2"
        assert referral["status"] == "registered"

        with pytest.raises(ConflictError):
            await referrals.register_referral(store, policy, professional, referred_user_sub="pro-2")
        with pytest.raises(ValidationError):
            await referrals.register_referral(store, policy, other_professional, referred_user_sub="pro-2")

    _run(scenario())


def test_referral_lookup_is_machine_only(store, policy, professional) -> None:
    async def scenario() -> None:
        await referrals.register_referral(store, policy, professional, referred_user_sub="pro-2")
        found = await referrals.lookup_referral(
            store, policy, _worker("referrals:read"), referred_user_sub="pro-2"
        )
        assert found["referrer_user_sub"] == "pro-1"

        with pytest.raises(NotFoundError):
            await referrals.lookup_referral(store, policy, _worker("referrals:read"), referred_user_sub="pro-9")
        with pytest.raises(ForbiddenError):
            await referrals.lookup_referral(store, policy, professional, referred_user_sub="pro-2")

    _run(scenario())


def test_bonus_award_applies_once_per_event(store, policy) -> None:
    async def scenario() -> None:
        worker = _worker("referrals:write")
        first = await referrals.award_bonus(
            store, policy, worker, referrer_user_sub="pro-1", amount=50.0, event_id="17"
        )
        replay = await referrals.award_bonus(
            store, policy, worker, referrer_user_sub="pro-1", amount=50.0, event_id="17"
        )
        second = await referrals.award_bonus(
            store, policy, worker, referrer_user_sub="pro-1", amount=50.0, event_id="18"
        )

        assert first.applied is True
        assert replay.applied is False
        assert replay.referral_bonus == 50.0
        assert second.referral_bonus == 100.0
        assert await store.get_referral_bonus("pro-1") == 100.0

        with pytest.raises(ValidationError):
            await referrals.award_bonus(store, policy, worker, referrer_user_sub="pro-1", amount=0, event_id="19")
        with pytest.raises(ForbiddenError):
            await referrals.award_bonus(
                store, policy, _worker("referrals:read"), referrer_user_sub="pro-1", amount=50.0, event_id="20"
            )

    _run(scenario())


def test_expired_lease_redelivers_unacknowledged_changes(store, factory) -> None:
    async def scenario() -> None:
        posting = await factory.posting()
        await factory.application(posting, "pro-1")
        await factory.application(posting, "pro-2")

        first = await store.claim_application_changes(limit=10, lease_seconds=60)
        assert [change["event_id"] for change in first] == ["1", "2"]
        assert await store.claim_application_changes(limit=10, lease_seconds=60) == []

        assert await store.ack_application_changes(["1"]) == 1
        for change in store.change_feed:
            change["lease_expires_at"] = datetime.now(timezone.utc) - timedelta(seconds=1)

        redelivered = await store.claim_application_changes(limit=10, lease_seconds=60)
        assert [change["event_id"] for change in redelivered] == ["2"]
        assert await store.ack_application_changes(["1", "2"]) == 1

    _run(scenario())


def test_referral_routes(api_client: TestClient, bearer, machine_headers) -> None:
    created = api_client.post("/referrals", json={"referredUserSub": "pro-2"}, headers=bearer("pro-token"))
    assert created.status_code == 201
    assert created.json()["referrerUserSub"] == "pro-1"

    duplicate = api_client.post("/referrals", json={"referredUserSub": "pro-2"}, headers=bearer("clinic-token"))
    assert duplicate.status_code == 409

    anonymous = api_client.get("/referrals/pro-2")
    assert anonymous.status_code == 401

    wrong_key = api_client.get(
        "/referrals/pro-2",
        headers={"X-Module-Id": machine_headers["X-Module-Id"], "X-API-Key": "not-the-key"},
    )
    assert wrong_key.status_code == 401

    lookup = api_client.get("/referrals/pro-2", headers=machine_headers)
    assert lookup.status_code == 200
    assert lookup.json()["referrerUserSub"] == "pro-1"

    award = {"eventId": "42", "amount": 50}
    applied = api_client.post("/referrals/pro-1/bonus", json=award, headers=machine_headers)
    replayed = api_client.post("/referrals/pro-1/bonus", json=award, headers=machine_headers)
    assert applied.json() == {"referrerUserSub": "pro-1", "applied": True, "referralBonus": 50.0}
    assert replayed.json() == {"referrerUserSub": "pro-1", "applied": False, "referralBonus": 50.0}


def test_change_feed_routes_claim_and_ack(api_client: TestClient, factory, bearer, machine_headers) -> None:
    posting = _run(factory.posting())
    application = _run(factory.application(posting, "pro-1", status="scheduled"))

    human = api_client.post("/streams/applications/claim", json={"limit": 5}, headers=bearer("clinic-token"))
    assert human.status_code == 401

    completed = api_client.post(f"/applications/{application['application_id']}/complete", headers=bearer("clinic-token"))
    assert completed.status_code == 200

    claimed = api_client.post("/streams/applications/claim", json={"limit": 5}, headers=machine_headers)
    assert claimed.status_code == 200
    records = claimed.json()
    assert [record["eventName"] for record in records] == ["INSERT", "MODIFY"]
    assert records[1]["keys"] == {"job_id": posting["job_id"], "professional_user_sub": "pro-1"}
    assert records[1]["oldImage"]["status"] == "scheduled"
    assert records[1]["newImage"]["status"] == "completed"

    empty = api_client.post("/streams/applications/claim", json={"limit": 5}, headers=machine_headers)
    assert empty.json() == []

    acked = api_client.post(
        "/streams/applications/ack",
        json={"eventIds": [record["eventId"] for record in records]},
        headers=machine_headers,
    )
    assert acked.json() == {"acknowledged": 2}
