from __future__ import annotations

import asyncio
import hashlib
import os
from collections.abc import Coroutine, Iterator
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest
from fastapi.testclient import TestClient

from staffing_api.core.config import get_settings
from staffing_api.main import app
from staffing_api.services.repository import get_repository

WORKER_HEADERS = {
    "X-Module-Id": "integration-bonus-processor",
    "X-API-Key": "integration-bonus-processor-key",
}
SCHEMA_PATH = Path(__file__).resolve().parents[1] / "sql" / "0001_job_lifecycle.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("DS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require DS_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset_schema(database_url))


@pytest.fixture
def pg_client(database_url: str, identity_provider: None, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setenv("DS_STORAGE_BACKEND", "postgres")
    monkeypatch.setenv("DS_DATABASE_URL", database_url)
    get_settings.cache_clear()
    get_repository.cache_clear()

    with TestClient(app) as client:
        yield client

    get_repository.cache_clear()
    get_settings.cache_clear()


def test_negotiated_hire_flows_into_change_feed_and_bonus(pg_client: TestClient, bearer) -> None:
    posting = pg_client.post(
        "/postings",
        json={"jobType": "temporary", "title": "Saturday hygienist", "hourlyRate": 40, "dates": ["2026-06-06"]},
        headers=bearer("clinic-token"),
    )
    assert posting.status_code == 201
    job_id = posting.json()["jobId"]

    application = pg_client.post(
        f"/postings/{job_id}/applications",
        json={"proposedRate": 55},
        headers=bearer("pro-token"),
    )
    assert application.status_code == 201
    application_body = application.json()
    assert application_body["status"] == "negotiating"
    application_id = application_body["applicationId"]
    negotiation_id = application_body["negotiationId"]

    accepted = pg_client.post(
        f"/applications/{application_id}/negotiations/{negotiation_id}/response",
        json={"response": "accepted"},
        headers=bearer("clinic-token"),
    )
    assert accepted.status_code == 200
    assert accepted.json()["applicationStatus"] == "scheduled"
    assert accepted.json()["acceptedHourlyRate"] == 55.0

    replay = pg_client.post(
        f"/applications/{application_id}/negotiations/{negotiation_id}/response",
        json={"response": "accepted"},
        headers=bearer("pro-token"),
    )
    assert replay.status_code == 409

    completed = pg_client.post(f"/applications/{application_id}/complete", headers=bearer("clinic-token"))
    assert completed.status_code == 200

    claimed = pg_client.post("/streams/applications/claim", json={"limit": 10}, headers=WORKER_HEADERS)
    assert claimed.status_code == 200
    records = claimed.json()
    assert [record["eventName"] for record in records] == ["INSERT", "MODIFY", "MODIFY"]
    assert records[-1]["oldImage"]["status"] == "scheduled"
    assert records[-1]["newImage"]["status"] == "completed"

    award = {"eventId": records[-1]["eventId"], "amount": 50}
    first = pg_client.post("/referrals/clinic-1/bonus", json=award, headers=WORKER_HEADERS)
    second = pg_client.post("/referrals/clinic-1/bonus", json=award, headers=WORKER_HEADERS)
    assert first.json()["applied"] is True
    assert second.json() == {"referrerUserSub": "clinic-1", "applied": False, "referralBonus": 50.0}

    acked = pg_client.post(
        "/streams/applications/ack",
        json={"eventIds": [record["eventId"] for record in records]},
        headers=WORKER_HEADERS,
    )
    assert acked.json() == {"acknowledged": 3}


def test_cascade_delete_cancels_active_applications(pg_client: TestClient, bearer, database_url: str) -> None:
    posting = pg_client.post(
        "/postings",
        json={"jobType": "permanent", "salaryMin": 90000, "salaryMax": 110000},
        headers=bearer("clinic-token"),
    )
    job_id = posting.json()["jobId"]
    pg_client.post(f"/postings/{job_id}/applications", json={}, headers=bearer("pro-token"))
    withdrawn = pg_client.post(f"/postings/{job_id}/applications", json={}, headers=bearer("pro2-token"))
    pg_client.post(f"/applications/{withdrawn.json()['applicationId']}/withdraw", headers=bearer("pro2-token"))

    deleted = pg_client.delete(f"/postings/permanent/{job_id}", headers=bearer("clinic-token"))
    assert deleted.status_code == 200
    assert deleted.json()["affectedApplications"] == 1

    statuses = _run(_application_statuses(database_url, job_id))
    assert statuses == {"pro-1": "job_cancelled", "pro-2": "withdrawn"}


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _reset_schema(database_url: str) -> None:
    connection = await asyncpg.connect(database_url)
    try:
        await connection.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        await connection.execute(
            """
            truncate table
              job_postings,
              job_applications,
              job_negotiations,
              referrals,
              referral_balances,
              referral_bonus_awards,
              application_change_feed,
              service_modules
            restart identity
            """
        )
        await connection.execute(
            """
            insert into service_modules (module_id, scopes, key_hash, enabled)
            values ($1, $2::text[], $3, true)
            """,
            WORKER_HEADERS["X-Module-Id"],
            ["change_feed:consume", "referrals:read", "referrals:write"],
            hashlib.sha256(WORKER_HEADERS["X-API-Key"].encode("utf-8")).hexdigest(),
        )
    finally:
        await connection.close()


async def _application_statuses(database_url: str, job_id: str) -> dict[str, str]:
    connection = await asyncpg.connect(database_url)
    try:
        rows = await connection.fetch(
            "select professional_user_sub, status from job_applications where job_id = $1",
            job_id,
        )
    finally:
        await connection.close()
    return {row["professional_user_sub"]: row["status"] for row in rows}
