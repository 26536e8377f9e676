"""Job-posting status state machine.

``can_transition`` and ``validate_transition`` are pure; ``transition_posting_status``
performs the single conditional write that moves a posting and appends its history
entry in the same statement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from opentelemetry import trace

from staffing_api.core.auth import Principal
from staffing_api.core.errors import ConflictError, InvalidTransitionError, MissingRequiredFieldError, ValidationError
from staffing_api.core.policy import Action, AuthorizationPolicy
from staffing_api.services.postings import load_owned_posting
from staffing_api.services.repository import RepositoryConflictError
from staffing_api.services.states import POSTING_STATUSES, normalize_posting_status

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

POSTING_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "open": frozenset({"scheduled", "action_needed", "completed"}),
    "scheduled": frozenset({"action_needed", "completed", "open"}),
    "action_needed": frozenset({"scheduled", "completed", "open"}),
    "completed": frozenset({"open"}),
}


@dataclass(slots=True)
class StatusChangeRequest:
    status: str
    notes: str | None = None
    accepted_professional_user_sub: str | None = None
    scheduled_date: date | None = None
    completion_notes: str | None = None


@dataclass(slots=True)
class TransitionResult:
    job_id: str
    previous_status: str
    new_status: str
    updated_at: datetime
    posting: dict[str, Any]


def can_transition(current: str | None, target: str) -> bool:
    return target in POSTING_STATUS_TRANSITIONS.get(normalize_posting_status(current), frozenset())


def valid_next_states(current: str | None) -> list[str]:
    return sorted(POSTING_STATUS_TRANSITIONS.get(normalize_posting_status(current), frozenset()))


def validate_transition(current: str | None, request: StatusChangeRequest) -> None:
    if request.status not in POSTING_STATUSES:
        raise ValidationError(
            f"unknown posting status: {request.status}",
            details={"validStatuses": list(POSTING_STATUSES)},
        )

    current_status = normalize_posting_status(current)
    if not can_transition(current_status, request.status):
        raise InvalidTransitionError(
            f"cannot move posting from {current_status} to {request.status}",
            details={
                "currentStatus": current_status,
                "requestedStatus": request.status,
                "validNextStates": valid_next_states(current_status),
            },
        )

    if request.status == "scheduled":
        missing = []
        if not (request.accepted_professional_user_sub or "").strip():
            missing.append("acceptedProfessionalUserSub")
        if request.scheduled_date is None:
            missing.append("scheduledDate")
        if missing:
            raise MissingRequiredFieldError(
                "scheduling a posting requires the accepted professional and a date",
                details={"missingFields": missing},
            )


def build_history_entry(
    *,
    from_status: str,
    to_status: str,
    changed_by: str,
    changed_at: datetime,
    notes: str | None,
) -> dict[str, Any]:
    return {
        "from_status": from_status,
        "to_status": to_status,
        "changed_at": changed_at.isoformat(),
        "changed_by": changed_by,
        "notes": notes,
    }


async def transition_posting_status(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    job_id: str,
    request: StatusChangeRequest,
) -> TransitionResult:
    posting = await load_owned_posting(repository, policy, actor, job_id=job_id, action=Action.POSTING_TRANSITION)
    current_status = normalize_posting_status(posting.get("status"))
    validate_transition(current_status, request)

    now = datetime.now(timezone.utc)
    changes: dict[str, Any] = {"status": request.status, "updated_at": now}
    if request.notes:
        changes["status_notes"] = request.notes
    if request.status == "scheduled":
        changes["accepted_professional_user_sub"] = request.accepted_professional_user_sub
        changes["scheduled_date"] = request.scheduled_date
    if request.status == "completed":
        changes["completed_at"] = now
        if request.completion_notes:
            changes["completion_notes"] = request.completion_notes

    history_entry = build_history_entry(
        from_status=current_status,
        to_status=request.status,
        changed_by=actor.subject,
        changed_at=now,
        notes=request.notes,
    )

    with tracer.start_as_current_span("posting.transition_status") as span:
        span.set_attribute("posting.job_id", job_id)
        span.set_attribute("posting.from_status", current_status)
        span.set_attribute("posting.to_status", request.status)
        try:
            updated = await repository.update_posting_status(
                clinic_user_sub=posting["clinic_user_sub"],
                job_id=job_id,
                # Precondition on the stored value, which may still be a legacy alias.
                expected_status=posting["status"],
                changes=changes,
                history_entry=history_entry,
            )
        except RepositoryConflictError as exc:
            raise ConflictError(
                "posting status changed concurrently; reload and retry",
                details={"jobId": job_id},
            ) from exc

    logger.info(
        "job posting status changed job_id=%s from=%s to=%s changed_by=%s",
        job_id,
        current_status,
        request.status,
        actor.subject,
    )
    return TransitionResult(
        job_id=job_id,
        previous_status=current_status,
        new_status=request.status,
        updated_at=now,
        posting=updated,
    )
