from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from staffing_api.core.auth import Principal
from staffing_api.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from staffing_api.core.policy import Action, AuthorizationPolicy, Resource
from staffing_api.services.postings import load_owned_posting
from staffing_api.services.repository import RepositoryConflictError, RepositoryNotFoundError
from staffing_api.services.states import (
    FILLED_APPLICATION_STATUSES,
    HOURLY_JOB_TYPES,
    TERMINAL_APPLICATION_STATUSES,
    application_status_predecessors,
    normalize_posting_status,
    rate_kind_for_job_type,
)

logger = logging.getLogger(__name__)

EDITABLE_APPLICATION_STATUSES = frozenset({"pending", "negotiating"})
EDITABLE_APPLICATION_FIELDS = ("message", "proposed_rate", "availability", "start_date", "notes")


def application_resource(application: dict[str, Any]) -> Resource:
    return Resource(
        kind="application",
        clinic_user_sub=application.get("clinic_user_sub"),
        professional_user_sub=application.get("professional_user_sub"),
    )


async def find_application(repository, application_id: str) -> dict[str, Any]:
    try:
        return await repository.find_application(application_id)
    except RepositoryNotFoundError as exc:
        raise NotFoundError("application not found", details={"applicationId": application_id}) from exc


async def ensure_single_acceptance(repository, *, job_id: str, professional_user_sub: str) -> None:
    """Refuse to fill a posting that already has an accepted or scheduled applicant.

    This is a read check, not an atomic guarantee: two concurrent acceptances can
    both pass it.
    """
    filled = await repository.list_applications_for_job(job_id, statuses=FILLED_APPLICATION_STATUSES)
    others = [row for row in filled if row.get("professional_user_sub") != professional_user_sub]
    if others:
        raise ConflictError(
            "another application has already been accepted for this job",
            details={"jobId": job_id, "filledApplicationIds": [row.get("application_id") for row in others]},
        )


async def write_application_status(
    repository,
    application: dict[str, Any],
    target: str,
    *,
    extra_changes: dict[str, Any] | None = None,
    allowed_from: frozenset[str] | None = None,
) -> dict[str, Any]:
    """Conditional status write keyed on the application's composite key."""
    allowed = allowed_from if allowed_from is not None else application_status_predecessors(target)
    current = application.get("status")
    if current not in allowed:
        raise ConflictError(
            f"application cannot move from {current} to {target}",
            details={"currentStatus": current, "requestedStatus": target, "allowedFrom": sorted(allowed)},
        )

    changes = {**(extra_changes or {}), "status": target, "updated_at": datetime.now(timezone.utc)}
    try:
        return await repository.update_application(
            job_id=application["job_id"],
            professional_user_sub=application["professional_user_sub"],
            changes=changes,
            expected_statuses=allowed,
        )
    except RepositoryConflictError as exc:
        raise ConflictError(
            "application changed concurrently; reload and retry",
            details={"applicationId": application.get("application_id"), "requestedStatus": target},
        ) from exc
    except RepositoryNotFoundError as exc:
        raise NotFoundError("application not found", details={"applicationId": application.get("application_id")}) from exc


async def submit_application(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    job_id: str,
    submission: dict[str, Any],
) -> dict[str, Any]:
    policy.require(actor, Action.APPLICATION_SUBMIT)
    try:
        posting = await repository.find_posting(job_id)
    except RepositoryNotFoundError as exc:
        raise NotFoundError("job posting not found", details={"jobId": job_id}) from exc

    if posting.get("clinic_user_sub") == actor.subject:
        raise ForbiddenError("clinics cannot apply to their own postings")
    if normalize_posting_status(posting.get("status")) != "open":
        raise ConflictError(
            "job posting is not accepting applications",
            details={"jobId": job_id, "status": normalize_posting_status(posting.get("status"))},
        )

    try:
        await repository.get_application(job_id=job_id, professional_user_sub=actor.subject)
    except RepositoryNotFoundError:
        pass
    else:
        raise ConflictError("you have already applied to this job", details={"jobId": job_id})

    job_type = posting.get("job_type")
    proposal = _validate_proposal(job_type, submission)
    now = datetime.now(timezone.utc)
    application_id = str(uuid.uuid4())
    application: dict[str, Any] = {
        "job_id": job_id,
        "professional_user_sub": actor.subject,
        "application_id": application_id,
        "clinic_user_sub": posting.get("clinic_user_sub"),
        "clinic_id": posting.get("clinic_id"),
        "job_type": job_type,
        "status": "pending",
        "message": submission.get("message"),
        "availability": submission.get("availability"),
        "start_date": submission.get("start_date"),
        "notes": submission.get("notes"),
        "applied_at": now,
        "updated_at": now,
        **proposal,
    }

    if _differs_from_posting(posting, proposal):
        negotiation = await repository.create_negotiation(
            {
                "application_id": application_id,
                "negotiation_id": str(uuid.uuid4()),
                "job_id": job_id,
                "professional_user_sub": actor.subject,
                "clinic_user_sub": posting.get("clinic_user_sub"),
                "rate_kind": rate_kind_for_job_type(job_type),
                "negotiation_status": "pending",
                "proposed_hourly_rate": proposal.get("proposed_rate"),
                "proposed_salary_min": proposal.get("proposed_salary_min"),
                "proposed_salary_max": proposal.get("proposed_salary_max"),
                "message": submission.get("message"),
                "created_at": now,
                "updated_at": now,
            }
        )
        application["status"] = "negotiating"
        application["negotiation_id"] = negotiation["negotiation_id"]

    try:
        created = await repository.create_application(application)
    except RepositoryConflictError as exc:
        if application.get("negotiation_id"):
            # Lost a duplicate race after the negotiation was written; it stays unreferenced.
            logger.warning(
                "duplicate application left negotiation unreferenced job_id=%s professional_user_sub=%s negotiation_id=%s",
                job_id,
                actor.subject,
                application["negotiation_id"],
            )
        raise ConflictError("you have already applied to this job", details={"jobId": job_id}) from exc

    logger.info(
        "application submitted application_id=%s job_id=%s status=%s",
        application_id,
        job_id,
        created["status"],
    )
    return created


async def read_application(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    application_id: str,
) -> dict[str, Any]:
    application = await find_application(repository, application_id)
    policy.require(actor, Action.APPLICATION_READ, application_resource(application))
    return application


async def list_applications_for_posting(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    job_id: str,
) -> list[dict[str, Any]]:
    await load_owned_posting(repository, policy, actor, job_id=job_id, action=Action.APPLICATION_LIST)
    return await repository.list_applications_for_job(job_id)


async def list_negotiations_for_posting(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    job_id: str,
) -> list[dict[str, Any]]:
    await load_owned_posting(repository, policy, actor, job_id=job_id, action=Action.APPLICATION_LIST)
    return await repository.list_negotiations_for_job(job_id)


async def list_negotiations(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    application_id: str,
) -> list[dict[str, Any]]:
    application = await find_application(repository, application_id)
    policy.require(actor, Action.NEGOTIATION_READ, application_resource(application))
    return await repository.list_negotiations_for_application(application_id)


async def update_application_terms(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    application_id: str,
    update: dict[str, Any],
) -> dict[str, Any]:
    application = await find_application(repository, application_id)
    policy.require(actor, Action.APPLICATION_UPDATE, application_resource(application))

    if application.get("status") not in EDITABLE_APPLICATION_STATUSES:
        raise ConflictError(
            f"cannot update an application with status {application.get('status')}",
            details={"currentStatus": application.get("status"), "editableStatuses": sorted(EDITABLE_APPLICATION_STATUSES)},
        )

    changes = {name: update[name] for name in EDITABLE_APPLICATION_FIELDS if update.get(name) is not None}
    if not changes:
        raise ValidationError("no updatable fields supplied", details={"updatableFields": list(EDITABLE_APPLICATION_FIELDS)})
    if changes.get("proposed_rate") is not None:
        if application.get("job_type") not in HOURLY_JOB_TYPES:
            raise ValidationError("proposedRate applies to hourly jobs only")
        if changes["proposed_rate"] < 0:
            raise ValidationError("proposedRate must not be negative")
    changes["updated_at"] = datetime.now(timezone.utc)

    try:
        return await repository.update_application(
            job_id=application["job_id"],
            professional_user_sub=application["professional_user_sub"],
            changes=changes,
            expected_statuses=EDITABLE_APPLICATION_STATUSES,
        )
    except RepositoryConflictError as exc:
        raise ConflictError("application changed concurrently; reload and retry") from exc


async def withdraw_application(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    application_id: str,
) -> dict[str, Any]:
    application = await find_application(repository, application_id)
    policy.require(actor, Action.APPLICATION_WITHDRAW, application_resource(application))
    if application.get("status") in FILLED_APPLICATION_STATUSES:
        raise ConflictError(
            "accepted or scheduled applications cannot be withdrawn",
            details={"currentStatus": application.get("status")},
        )
    withdrawn = await write_application_status(repository, application, "withdrawn")
    logger.info("application withdrawn application_id=%s", application_id)
    return withdrawn


async def accept_application(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    application_id: str,
) -> dict[str, Any]:
    application = await _load_for_review(repository, policy, actor, application_id)
    await ensure_single_acceptance(
        repository,
        job_id=application["job_id"],
        professional_user_sub=application["professional_user_sub"],
    )
    scheduled = await write_application_status(repository, application, "scheduled")
    logger.info("application accepted application_id=%s job_id=%s", application_id, application["job_id"])
    return scheduled


async def reject_application(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    application_id: str,
) -> dict[str, Any]:
    application = await _load_for_review(repository, policy, actor, application_id)
    rejected = await write_application_status(repository, application, "rejected")
    logger.info("application rejected application_id=%s job_id=%s", application_id, application["job_id"])
    return rejected


async def complete_application(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    application_id: str,
) -> dict[str, Any]:
    application = await _load_for_review(repository, policy, actor, application_id)
    completed = await write_application_status(
        repository,
        application,
        "completed",
        allowed_from=frozenset({"scheduled"}),
    )
    logger.info("application completed application_id=%s job_id=%s", application_id, application["job_id"])
    return completed


async def _load_for_review(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    application_id: str,
) -> dict[str, Any]:
    application = await find_application(repository, application_id)
    policy.require(actor, Action.APPLICATION_REVIEW, application_resource(application))
    if application.get("status") in TERMINAL_APPLICATION_STATUSES:
        raise ConflictError(
            f"application is already {application.get('status')}",
            details={"currentStatus": application.get("status")},
        )
    return application


def _validate_proposal(job_type: str | None, submission: dict[str, Any]) -> dict[str, Any]:
    if job_type in HOURLY_JOB_TYPES:
        if submission.get("proposed_salary_min") is not None or submission.get("proposed_salary_max") is not None:
            raise ValidationError("hourly jobs take proposedRate, not a salary range")
        rate = submission.get("proposed_rate")
        if rate is not None and rate < 0:
            raise ValidationError("proposedRate must not be negative")
        return {"proposed_rate": rate}

    if submission.get("proposed_rate") is not None:
        raise ValidationError("permanent jobs take a salary range, not proposedRate")
    salary_min = submission.get("proposed_salary_min")
    salary_max = submission.get("proposed_salary_max")
    if (salary_min is None) != (salary_max is None):
        raise ValidationError("proposedSalaryMin and proposedSalaryMax must be supplied together")
    if salary_min is not None and (salary_min < 0 or salary_max < salary_min):
        raise ValidationError("proposedSalaryMin must be non-negative and not exceed proposedSalaryMax")
    return {"proposed_salary_min": salary_min, "proposed_salary_max": salary_max}


def _differs_from_posting(posting: dict[str, Any], proposal: dict[str, Any]) -> bool:
    if "proposed_rate" in proposal:
        rate = proposal["proposed_rate"]
        return rate is not None and rate != posting.get("hourly_rate")
    if proposal.get("proposed_salary_min") is None:
        return False
    return (proposal["proposed_salary_min"], proposal["proposed_salary_max"]) != (
        posting.get("salary_min"),
        posting.get("salary_max"),
    )
