from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import date
from typing import Any, TypeVar

import pytest
from fastapi.testclient import TestClient

from staffing_api.core.errors import ConflictError, InvalidTransitionError, MissingRequiredFieldError, NotFoundError
from staffing_api.services.transitions import (
    POSTING_STATUS_TRANSITIONS,
    StatusChangeRequest,
    can_transition,
    transition_posting_status,
    valid_next_states,
)

T = TypeVar("T")

ALL_STATUSES = ("open", "scheduled", "action_needed", "completed")
EXPECTED_EDGES = {
    ("open", "scheduled"),
    ("open", "action_needed"),
    ("open", "completed"),
    ("scheduled", "action_needed"),
    ("scheduled", "completed"),
    ("scheduled", "open"),
    ("action_needed", "scheduled"),
    ("action_needed", "completed"),
    ("action_needed", "open"),
    ("completed", "open"),
}


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def test_transition_table_matches_posting_lifecycle() -> None:
    edges = {(current, target) for current in ALL_STATUSES for target in ALL_STATUSES if can_transition(current, target)}
    assert edges == EXPECTED_EDGES
    assert set(POSTING_STATUS_TRANSITIONS) == set(ALL_STATUSES)


def test_self_transitions_are_not_edges() -> None:
    for status in ALL_STATUSES:
        assert can_transition(status, status) is False


def test_legacy_active_status_reads_as_open() -> None:
    assert can_transition("active", "scheduled") is True
    assert valid_next_states("active") == ["action_needed", "completed", "scheduled"]


def test_rejected_transition_leaves_posting_unchanged(store, factory, policy, clinic) -> None:
    async def scenario() -> None:
        posting = await factory.posting(status="completed")
        with pytest.raises(InvalidTransitionError) as excinfo:
            await transition_posting_status(
                store,
                policy,
                clinic,
                job_id=posting["job_id"],
                request=StatusChangeRequest(
                    status="scheduled",
                    accepted_professional_user_sub="pro-1",
                    scheduled_date=date(2026, 4, 1),
                ),
            )
        assert excinfo.value.details["validNextStates"] == ["open"]

        stored = await store.get_posting(clinic_user_sub="clinic-1", job_id=posting["job_id"])
        assert stored["status"] == "completed"
        assert stored["status_history"] == []

    _run(scenario())


def test_scheduling_requires_professional_and_date(store, factory, policy, clinic) -> None:
    async def scenario() -> None:
        posting = await factory.posting()
        with pytest.raises(MissingRequiredFieldError) as excinfo:
            await transition_posting_status(
                store,
                policy,
                clinic,
                job_id=posting["job_id"],
                request=StatusChangeRequest(status="scheduled"),
            )
        assert excinfo.value.details["missingFields"] == ["acceptedProfessionalUserSub", "scheduledDate"]

        stored = await store.get_posting(clinic_user_sub="clinic-1", job_id=posting["job_id"])
        assert stored["status"] == "open"

        result = await transition_posting_status(
            store,
            policy,
            clinic,
            job_id=posting["job_id"],
            request=StatusChangeRequest(
                status="scheduled",
                notes="booked",
                accepted_professional_user_sub="pro-1",
                scheduled_date=date(2026, 4, 1),
            ),
        )
        assert result.previous_status == "open"
        assert result.new_status == "scheduled"

        stored = await store.get_posting(clinic_user_sub="clinic-1", job_id=posting["job_id"])
        assert stored["status"] == "scheduled"
        assert stored["accepted_professional_user_sub"] == "pro-1"
        assert len(stored["status_history"]) == 1
        entry = stored["status_history"][0]
        assert entry["from_status"] == "open"
        assert entry["to_status"] == "scheduled"
        assert entry["changed_by"] == "clinic-1"
        assert entry["notes"] == "booked"

    _run(scenario())


def test_history_is_append_only_across_transitions(store, factory, policy, clinic) -> None:
    async def scenario() -> list[dict[str, Any]]:
        posting = await factory.posting(status="active")
        for target in ("action_needed", "completed", "open"):
            await transition_posting_status(
                store,
                policy,
                clinic,
                job_id=posting["job_id"],
                request=StatusChangeRequest(status=target, completion_notes="done" if target == "completed" else None),
            )
        stored = await store.get_posting(clinic_user_sub="clinic-1", job_id=posting["job_id"])
        assert stored["completion_notes"] == "done"
        assert stored["completed_at"] is not None
        return stored["status_history"]

    history = _run(scenario())
    assert [(entry["from_status"], entry["to_status"]) for entry in history] == [
        ("open", "action_needed"),
        ("action_needed", "completed"),
        ("completed", "open"),
    ]


def test_other_clinic_cannot_see_posting(store, factory, policy, other_clinic) -> None:
    async def scenario() -> None:
        posting = await factory.posting()
        with pytest.raises(NotFoundError):
            await transition_posting_status(
                store,
                policy,
                other_clinic,
                job_id=posting["job_id"],
                request=StatusChangeRequest(status="action_needed"),
            )

    _run(scenario())


def test_concurrent_status_change_is_a_conflict(store, factory, policy, clinic) -> None:
    class RacingStore:
        """Moves the posting between the read and the conditional write."""

        def __init__(self, inner) -> None:
            self.inner = inner

        async def get_posting(self, **kwargs: Any) -> dict[str, Any]:
            posting = await self.inner.get_posting(**kwargs)
            self.inner.postings[(kwargs["clinic_user_sub"], kwargs["job_id"])]["status"] = "completed"
            return posting

        async def update_posting_status(self, **kwargs: Any) -> dict[str, Any]:
            return await self.inner.update_posting_status(**kwargs)

    async def scenario() -> None:
        posting = await factory.posting()
        with pytest.raises(ConflictError):
            await transition_posting_status(
                RacingStore(store),
                policy,
                clinic,
                job_id=posting["job_id"],
                request=StatusChangeRequest(status="action_needed"),
            )
        stored = await store.get_posting(clinic_user_sub="clinic-1", job_id=posting["job_id"])
        assert stored["status_history"] == []

    _run(scenario())


def test_status_route_returns_previous_and_new_status(api_client: TestClient, factory, bearer) -> None:
    posting = _run(factory.posting())

    response = api_client.put(
        f"/postings/{posting['job_id']}/status",
        json={"status": "scheduled", "acceptedProfessionalUserSub": "pro-1", "scheduledDate": "2026-04-01"},
        headers=bearer("clinic-token"),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["previousStatus"] == "open"
    assert body["newStatus"] == "scheduled"
    assert body["updatedAt"]
    assert body["statusHistory"][0]["toStatus"] == "scheduled"


def test_status_route_reports_valid_next_states(api_client: TestClient, factory, bearer) -> None:
    posting = _run(factory.posting(status="completed"))

    response = api_client.put(
        f"/postings/{posting['job_id']}/status",
        json={"status": "action_needed"},
        headers=bearer("clinic-token"),
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "invalid_transition"
    assert detail["details"]["validNextStates"] == ["open"]


def test_status_route_requires_clinic_group(api_client: TestClient, factory, bearer) -> None:
    posting = _run(factory.posting())

    response = api_client.put(
        f"/postings/{posting['job_id']}/status",
        json={"status": "action_needed"},
        headers=bearer("pro-token"),
    )
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "forbidden"
