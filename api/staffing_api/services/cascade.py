"""Cascading cancellation of a job posting into its dependent applications.

The store has no cross-entity transaction, so the delete runs as a saga:
flag every active application first, delete the posting last. A crash in
between leaves cancelled applications pointing at a live posting, which a
re-run of the same delete cleans up.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from staffing_api.core.auth import Principal
from staffing_api.core.errors import ConflictError, NotFoundError, PartialFailure, WrongJobTypeError
from staffing_api.core.policy import Action, AuthorizationPolicy
from staffing_api.services.postings import load_owned_posting
from staffing_api.services.states import CANCELLABLE_APPLICATION_STATUSES, normalize_posting_status
from staffing_api.services.transitions import valid_next_states

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CANCELLED_HANDLING = "Active applications have been marked as 'job_cancelled'"
UNAFFECTED_HANDLING = "No active applications were affected"

# Booked postings leave through a status transition, never a delete.
UNDELETABLE_POSTING_STATUSES = frozenset({"scheduled", "action_needed"})


@dataclass(slots=True)
class CascadeResult:
    job_id: str
    job_type: str
    affected_applications: int
    failures: list[PartialFailure] = field(default_factory=list)

    @property
    def application_handling(self) -> str:
        return CANCELLED_HANDLING if self.affected_applications else UNAFFECTED_HANDLING


async def delete_posting_with_cascade(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    job_id: str,
    expected_job_type: str | None = None,
    cascade: bool = True,
) -> CascadeResult:
    posting = await load_owned_posting(repository, policy, actor, job_id=job_id, action=Action.POSTING_DELETE)
    if expected_job_type is not None and posting.get("job_type") != expected_job_type:
        raise WrongJobTypeError(
            f"job posting is {posting.get('job_type')}, not {expected_job_type}",
            details={"expectedJobType": expected_job_type, "actualJobType": posting.get("job_type")},
        )
    await ensure_not_booked(repository, posting)

    with tracer.start_as_current_span("posting.cascade_delete") as span:
        span.set_attribute("posting.job_id", job_id)
        active = await repository.list_applications_for_job(job_id, statuses=CANCELLABLE_APPLICATION_STATUSES)
        span.set_attribute("cascade.active_applications", len(active))

        if active and not cascade:
            raise ConflictError(
                "job posting still has active applications",
                details={"activeApplications": len(active), "activeStatuses": sorted(CANCELLABLE_APPLICATION_STATUSES)},
            )

        affected, failures = await cancel_active_applications(repository, active)
        span.set_attribute("cascade.cancelled_applications", affected)
        span.set_attribute("cascade.failed_applications", len(failures))

        deleted = await repository.delete_posting(clinic_user_sub=posting["clinic_user_sub"], job_id=job_id)
        if not deleted:
            raise NotFoundError("job posting not found", details={"jobId": job_id})

    logger.info(
        "job posting deleted job_id=%s job_type=%s cancelled=%s failed=%s",
        job_id,
        posting.get("job_type"),
        affected,
        len(failures),
    )
    return CascadeResult(
        job_id=job_id,
        job_type=posting.get("job_type") or "",
        affected_applications=affected,
        failures=failures,
    )


async def ensure_not_booked(repository, posting: dict[str, Any]) -> None:
    """Refuse to delete a posting that has, or is about to have, a professional on the job."""
    status = normalize_posting_status(posting.get("status"))
    if status in UNDELETABLE_POSTING_STATUSES:
        raise ConflictError(
            f"job posting with status {status} cannot be deleted",
            details={"currentStatus": status, "validNextStates": valid_next_states(status)},
        )

    scheduled = await repository.list_applications_for_job(posting["job_id"], statuses={"scheduled"})
    if scheduled:
        raise ConflictError(
            "job posting has a scheduled application and cannot be deleted",
            details={
                "currentStatus": status,
                "validNextStates": valid_next_states(status),
                "scheduledApplicationIds": [application.get("application_id") for application in scheduled],
            },
        )


async def cancel_active_applications(
    repository,
    applications: list[dict[str, Any]],
) -> tuple[int, list[PartialFailure]]:
    """Flag each application ``job_cancelled``; failures are collected, never raised."""
    now = datetime.now(timezone.utc)
    failures: list[PartialFailure] = []
    targets = []
    for application in applications:
        if not application.get("application_id"):
            logger.warning(
                "skipping application without id job_id=%s professional_user_sub=%s",
                application.get("job_id"),
                application.get("professional_user_sub"),
            )
            failures.append(
                PartialFailure(item_id=str(application.get("professional_user_sub")), reason="missing application id")
            )
            continue
        targets.append(application)

    outcomes = await asyncio.gather(*(_cancel_one(repository, application, now) for application in targets))
    failures.extend(outcome for outcome in outcomes if outcome is not None)
    affected = sum(1 for outcome in outcomes if outcome is None)
    return affected, failures


async def _cancel_one(repository, application: dict[str, Any], now: datetime) -> PartialFailure | None:
    try:
        await repository.update_application(
            job_id=application["job_id"],
            professional_user_sub=application["professional_user_sub"],
            changes={"status": "job_cancelled", "updated_at": now},
            expected_statuses=CANCELLABLE_APPLICATION_STATUSES,
        )
    except Exception as exc:
        logger.warning(
            "failed to cancel application application_id=%s: %s",
            application["application_id"],
            exc,
            exc_info=True,
        )
        return PartialFailure(item_id=application["application_id"], reason=str(exc) or type(exc).__name__)
    return None
