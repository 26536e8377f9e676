from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any

from staffing_api.core.auth import Principal
from staffing_api.core.errors import ConflictError, MissingRequiredFieldError, NotFoundError, ValidationError
from staffing_api.core.policy import Action, AuthorizationPolicy, Resource
from staffing_api.services.repository import RepositoryConflictError, RepositoryNotFoundError
from staffing_api.services.states import HOURLY_JOB_TYPES, JOB_TYPES, normalize_posting_status

logger = logging.getLogger(__name__)


def posting_resource(posting: dict[str, Any]) -> Resource:
    return Resource(kind="posting", clinic_user_sub=posting.get("clinic_user_sub"))


async def load_owned_posting(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    job_id: str,
    action: Action,
) -> dict[str, Any]:
    """Group check first, then a lookup under the actor's own clinic key.

    Postings owned by another clinic are reported as missing rather than forbidden.
    """
    policy.require(actor, action)
    try:
        posting = await repository.get_posting(clinic_user_sub=actor.subject, job_id=job_id)
    except RepositoryNotFoundError as exc:
        raise NotFoundError("job posting not found", details={"jobId": job_id}) from exc
    policy.require(actor, action, posting_resource(posting))
    return posting


async def create_posting(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    draft: dict[str, Any],
) -> dict[str, Any]:
    policy.require(actor, Action.POSTING_CREATE)
    fields = _validate_draft(draft)

    now = datetime.now(timezone.utc)
    record = {
        **fields,
        "clinic_user_sub": actor.subject,
        "job_id": str(uuid.uuid4()),
        "status": "open",
        "status_history": [],
        "created_at": now,
        "updated_at": now,
    }
    try:
        created = await repository.create_posting(record)
    except RepositoryConflictError as exc:
        raise ConflictError(str(exc)) from exc

    logger.info(
        "job posting created job_id=%s job_type=%s clinic_user_sub=%s",
        created["job_id"],
        created["job_type"],
        actor.subject,
    )
    return created


async def read_posting(repository, policy: AuthorizationPolicy, actor: Principal, *, job_id: str) -> dict[str, Any]:
    posting = await load_owned_posting(repository, policy, actor, job_id=job_id, action=Action.POSTING_READ)
    posting["status"] = normalize_posting_status(posting.get("status"))
    return posting


def _validate_draft(draft: dict[str, Any]) -> dict[str, Any]:
    job_type = draft.get("job_type")
    if job_type not in JOB_TYPES:
        raise ValidationError("unknown job type", details={"validJobTypes": list(JOB_TYPES)})

    fields: dict[str, Any] = {
        "job_type": job_type,
        "clinic_id": draft.get("clinic_id"),
        "title": draft.get("title"),
        "start_time": draft.get("start_time"),
        "end_time": draft.get("end_time"),
    }

    if job_type in HOURLY_JOB_TYPES:
        hourly_rate = draft.get("hourly_rate")
        if hourly_rate is None:
            raise MissingRequiredFieldError("hourly postings require hourlyRate", details={"missingFields": ["hourlyRate"]})
        if hourly_rate <= 0:
            raise ValidationError("hourlyRate must be positive")
        if draft.get("salary_min") is not None or draft.get("salary_max") is not None:
            raise ValidationError("hourly postings do not carry a salary range")
        dates = [_iso_date(value) for value in draft.get("dates") or []]
        if not dates:
            raise MissingRequiredFieldError("hourly postings require dates", details={"missingFields": ["dates"]})
        if job_type == "temporary" and len(dates) != 1:
            raise ValidationError("temporary postings cover exactly one date")
        if len(set(dates)) != len(dates):
            raise ValidationError("dates must not repeat")
        fields["hourly_rate"] = float(hourly_rate)
        fields["dates"] = sorted(dates)
        return fields

    salary_min = draft.get("salary_min")
    salary_max = draft.get("salary_max")
    missing = [name for name, value in (("salaryMin", salary_min), ("salaryMax", salary_max)) if value is None]
    if missing:
        raise MissingRequiredFieldError("permanent postings require a salary range", details={"missingFields": missing})
    if salary_min < 0 or salary_max < salary_min:
        raise ValidationError("salaryMin must be non-negative and not exceed salaryMax")
    if draft.get("hourly_rate") is not None:
        raise ValidationError("permanent postings do not carry an hourly rate")
    fields["salary_min"] = float(salary_min)
    fields["salary_max"] = float(salary_max)
    fields["dates"] = []
    return fields


def _iso_date(value: Any) -> str:
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError as exc:
        raise ValidationError(f"invalid date: {value}") from exc
