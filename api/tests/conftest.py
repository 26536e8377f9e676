from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Iterator
from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DS_OTEL_ENABLED", "false")

import staffing_api.core.security as security  # noqa: E402
from staffing_api.core.auth import Principal, PrincipalType  # noqa: E402
from staffing_api.core.config import get_settings  # noqa: E402
from staffing_api.core.policy import AuthorizationPolicy  # noqa: E402
from staffing_api.main import app  # noqa: E402
from staffing_api.services.repository import get_repository  # noqa: E402
from staffing_api.services.store import LOCAL_MODULE_ID, LOCAL_MODULE_KEY, InMemoryStore  # noqa: E402

CLAIMS_BY_TOKEN: dict[str, dict[str, Any]] = {
    "clinic-token": {"sub": "clinic-1", "cognito:groups": ["clinicadmin"]},
    "other-clinic-token": {"sub": "clinic-2", "cognito:groups": "ClinicManager"},
    "pro-token": {"sub": "pro-1", "cognito:groups": ["professional"]},
    "pro2-token": {"sub": "pro-2", "groups": ["professional"]},
    "stranger-token": {"sub": "stranger-1"},
}


class Factory:
    """Seeds records straight into the in-memory store."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        self._clock = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    async def posting(
        self,
        clinic_user_sub: str = "clinic-1",
        job_type: str = "temporary",
        **overrides: Any,
    ) -> dict[str, Any]:
        now = self._tick()
        record: dict[str, Any] = {
            "clinic_user_sub": clinic_user_sub,
            "job_id": str(uuid.uuid4()),
            "job_type": job_type,
            "status": "open",
            "status_history": [],
            "created_at": now,
            "updated_at": now,
        }
        if job_type == "permanent":
            record.update(salary_min=90000.0, salary_max=110000.0, dates=[])
        else:
            record.update(hourly_rate=40.0, dates=[date(2026, 4, 1).isoformat()])
        record.update(overrides)
        return await self.store.create_posting(record)

    async def application(
        self,
        posting: dict[str, Any],
        professional_user_sub: str = "pro-1",
        status: str = "pending",
        **overrides: Any,
    ) -> dict[str, Any]:
        now = self._tick()
        record: dict[str, Any] = {
            "job_id": posting["job_id"],
            "professional_user_sub": professional_user_sub,
            "application_id": str(uuid.uuid4()),
            "clinic_user_sub": posting["clinic_user_sub"],
            "job_type": posting["job_type"],
            "status": status,
            "applied_at": now,
            "updated_at": now,
        }
        record.update(overrides)
        return await self.store.create_application(record)

    async def negotiation(self, application: dict[str, Any], **overrides: Any) -> dict[str, Any]:
        now = self._tick()
        record: dict[str, Any] = {
            "application_id": application["application_id"],
            "negotiation_id": str(uuid.uuid4()),
            "job_id": application["job_id"],
            "professional_user_sub": application["professional_user_sub"],
            "clinic_user_sub": application["clinic_user_sub"],
            "rate_kind": "salary" if application.get("job_type") == "permanent" else "hourly",
            "negotiation_status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        record.update(overrides)
        return await self.store.create_negotiation(record)


def _human(subject: str, *groups: str) -> Principal:
    return Principal(principal_type=PrincipalType.HUMAN, subject=subject, groups=set(groups))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def factory(store: InMemoryStore) -> Factory:
    return Factory(store)


@pytest.fixture
def policy() -> AuthorizationPolicy:
    return AuthorizationPolicy()


@pytest.fixture
def clinic() -> Principal:
    return _human("clinic-1", "clinicadmin")


@pytest.fixture
def other_clinic() -> Principal:
    return _human("clinic-2", "clinicmanager")


@pytest.fixture
def professional() -> Principal:
    return _human("pro-1", "professional")


@pytest.fixture
def other_professional() -> Principal:
    return _human("pro-2", "professional")


@pytest.fixture
def stranger() -> Principal:
    return _human("stranger-1")


@pytest.fixture
def bearer() -> Callable[[str], dict[str, str]]:
    return lambda token: {"Authorization": f"Bearer {token}"}


@pytest.fixture
def machine_headers() -> dict[str, str]:
    return {"X-Module-Id": LOCAL_MODULE_ID, "X-API-Key": LOCAL_MODULE_KEY}


@pytest.fixture
def identity_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    """Answers userinfo lookups from CLAIMS_BY_TOKEN instead of the network."""
    monkeypatch.setenv("DS_IDENTITY_USERINFO_URL", "https://identity.example.test/oauth2/userInfo")
    get_settings.cache_clear()

    async def _fake_fetch(*, token: str, **_: Any) -> dict[str, Any]:
        claims = CLAIMS_BY_TOKEN.get(token)
        if claims is None:
            raise security.HTTPException(status_code=401, detail="invalid bearer token")
        return claims

    monkeypatch.setattr(security, "_fetch_identity_claims", _fake_fetch)


@pytest.fixture
def api_client(store: InMemoryStore, identity_provider: None) -> Iterator[TestClient]:
    app.dependency_overrides[get_repository] = lambda: store

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    get_settings.cache_clear()
