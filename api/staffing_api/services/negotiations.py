"""Two-party rate negotiation.

A response is resolved in three phases that never overlap: who is acting,
whether the payload is valid for the negotiation's rate kind, and which rate
is agreed on acceptance. Nothing is written until all three have passed; then
the negotiation record is updated first and the application last.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from staffing_api.core.auth import Principal
from staffing_api.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCounterOfferError,
    NotFoundError,
    NothingToAcceptError,
    ValidationError,
)
from staffing_api.core.policy import Action, AuthorizationPolicy
from staffing_api.services.applications import application_resource, ensure_single_acceptance, find_application
from staffing_api.services.propagation import OUTCOME_APPLICATION_STATUS, NegotiationOutcome, propagate_outcome
from staffing_api.services.repository import RepositoryConflictError, RepositoryNotFoundError
from staffing_api.services.states import (
    CLOSED_NEGOTIATION_STATUSES,
    NEGOTIATION_RESPONSES,
    application_status_predecessors,
    rate_kind_for_job_type,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CLINIC = "clinic"
PROFESSIONAL = "professional"
COUNTER_RATE_FIELDS = {
    CLINIC: "clinic_counter_hourly_rate",
    PROFESSIONAL: "professional_counter_hourly_rate",
}


@dataclass(slots=True)
class NegotiationResponse:
    response: str
    message: str | None = None
    counter_salary_min: float | None = None
    counter_salary_max: float | None = None
    clinic_counter_hourly_rate: float | None = None
    professional_counter_hourly_rate: float | None = None


@dataclass(slots=True)
class NegotiationResult:
    negotiation_id: str
    application_id: str
    job_id: str
    actor: str
    response: str
    application_status: str
    accepted_hourly_rate: float | None
    responded_at: datetime
    next_steps: str


def resolve_actor(actor: Principal, *, clinic_user_sub: str | None, professional_user_sub: str | None) -> str:
    if clinic_user_sub and actor.subject == clinic_user_sub:
        return CLINIC
    if professional_user_sub and actor.subject == professional_user_sub:
        return PROFESSIONAL
    raise ForbiddenError("caller is neither the clinic owner nor the applying professional")


def validate_response(payload: NegotiationResponse, *, rate_kind: str) -> None:
    if payload.response not in NEGOTIATION_RESPONSES:
        raise ValidationError(
            f"unknown negotiation response: {payload.response}",
            details={"validResponses": list(NEGOTIATION_RESPONSES)},
        )
    if payload.response != "counter_offer":
        return

    if rate_kind == "salary":
        low, high = payload.counter_salary_min, payload.counter_salary_max
        if not _is_number(low) or not _is_number(high):
            raise InvalidCounterOfferError(
                "counterSalaryMin and counterSalaryMax are required numbers",
                details={"requiredFields": ["counterSalaryMin", "counterSalaryMax"]},
            )
        if low < 0 or high < low:
            raise InvalidCounterOfferError(
                "counterSalaryMin must be non-negative and not exceed counterSalaryMax",
                details={"counterSalaryMin": low, "counterSalaryMax": high},
            )
        return

    if payload.counter_salary_min is not None or payload.counter_salary_max is not None:
        raise InvalidCounterOfferError("hourly jobs are countered with an hourly rate, not a salary range")
    supplied = _supplied_hourly_counters(payload)
    if not supplied:
        raise InvalidCounterOfferError(
            "an hourly counter offer requires clinicCounterHourlyRate or professionalCounterHourlyRate",
            details={"requiredFields": ["clinicCounterHourlyRate", "professionalCounterHourlyRate"]},
        )
    for field_name, value in supplied.items():
        if not _is_number(value) or value < 0:
            raise InvalidCounterOfferError(
                "counter hourly rate must be a non-negative number",
                details={"field": _wire_name(field_name), "value": value},
            )


def reconcile_agreed_rate(
    *,
    actor: str,
    rate_kind: str,
    negotiation: dict[str, Any],
    application: dict[str, Any],
    payload: NegotiationResponse,
) -> float | None:
    """Rate both parties are bound to when ``actor`` accepts.

    Each side can only accept what the other side most recently offered; salaried
    negotiations do not produce a canonical rate.
    """
    if rate_kind == "salary":
        return None

    if actor == PROFESSIONAL:
        rate = _first_number(negotiation.get("clinic_counter_hourly_rate"), payload.clinic_counter_hourly_rate)
        if rate is None:
            raise NothingToAcceptError("the clinic has not made a counter offer to accept")
        return rate

    rate = _first_number(
        negotiation.get("professional_counter_hourly_rate"),
        payload.professional_counter_hourly_rate,
        application.get("proposed_rate"),
        negotiation.get("proposed_hourly_rate"),
    )
    if rate is None:
        raise NothingToAcceptError("the professional has not proposed a rate to accept")
    return rate


async def respond_to_negotiation(
    repository,
    policy: AuthorizationPolicy,
    principal: Principal,
    *,
    application_id: str,
    negotiation_id: str,
    payload: NegotiationResponse,
) -> NegotiationResult:
    try:
        negotiation = await repository.get_negotiation(application_id=application_id, negotiation_id=negotiation_id)
    except RepositoryNotFoundError as exc:
        raise NotFoundError(
            "negotiation not found",
            details={"applicationId": application_id, "negotiationId": negotiation_id},
        ) from exc
    application = await find_application(repository, application_id)

    policy.require(principal, Action.NEGOTIATION_RESPOND, application_resource(application))
    actor = resolve_actor(
        principal,
        clinic_user_sub=application.get("clinic_user_sub"),
        professional_user_sub=application.get("professional_user_sub"),
    )
    rate_kind = negotiation.get("rate_kind") or rate_kind_for_job_type(application.get("job_type"))
    validate_response(payload, rate_kind=rate_kind)

    if negotiation.get("negotiation_status") in CLOSED_NEGOTIATION_STATUSES:
        raise ConflictError(
            f"negotiation is already {negotiation.get('negotiation_status')}",
            details={"negotiationStatus": negotiation.get("negotiation_status")},
        )
    target_status = OUTCOME_APPLICATION_STATUS[payload.response]
    if application.get("status") not in application_status_predecessors(target_status):
        raise ConflictError(
            f"application with status {application.get('status')} cannot take a negotiation response",
            details={"currentStatus": application.get("status")},
        )

    agreed_rate = None
    if payload.response == "accepted":
        agreed_rate = reconcile_agreed_rate(
            actor=actor,
            rate_kind=rate_kind,
            negotiation=negotiation,
            application=application,
            payload=payload,
        )
        await ensure_single_acceptance(
            repository,
            job_id=application["job_id"],
            professional_user_sub=application["professional_user_sub"],
        )

    responded_at = datetime.now(timezone.utc)
    changes = _negotiation_changes(
        actor=actor,
        rate_kind=rate_kind,
        payload=payload,
        agreed_rate=agreed_rate,
        responded_at=responded_at,
    )

    with tracer.start_as_current_span("negotiation.respond") as span:
        span.set_attribute("negotiation.id", negotiation_id)
        span.set_attribute("negotiation.actor", actor)
        span.set_attribute("negotiation.response", payload.response)
        try:
            await repository.update_negotiation(
                application_id=application_id,
                negotiation_id=negotiation_id,
                changes=changes,
                expected_updated_at=negotiation.get("updated_at"),
            )
        except RepositoryConflictError as exc:
            raise ConflictError(
                "negotiation changed concurrently; reload and retry",
                details={"negotiationId": negotiation_id},
            ) from exc

        updated_application = await propagate_outcome(
            repository,
            NegotiationOutcome(
                application_id=application_id,
                negotiation_id=negotiation_id,
                actor=actor,
                response=payload.response,
                agreed_hourly_rate=agreed_rate,
            ),
        )

    logger.info(
        "negotiation response recorded negotiation_id=%s actor=%s response=%s agreed_rate=%s",
        negotiation_id,
        actor,
        payload.response,
        agreed_rate,
    )
    return NegotiationResult(
        negotiation_id=negotiation_id,
        application_id=application_id,
        job_id=application["job_id"],
        actor=actor,
        response=payload.response,
        application_status=updated_application["status"],
        accepted_hourly_rate=agreed_rate,
        responded_at=responded_at,
        next_steps=_next_steps(payload.response, actor),
    )


def _negotiation_changes(
    *,
    actor: str,
    rate_kind: str,
    payload: NegotiationResponse,
    agreed_rate: float | None,
    responded_at: datetime,
) -> dict[str, Any]:
    changes: dict[str, Any] = {
        "negotiation_status": payload.response,
        f"{actor}_response": payload.response,
        f"{actor}_message": payload.message,
        f"{actor}_responded_at": responded_at,
        "updated_at": responded_at,
    }
    if payload.response == "counter_offer":
        if rate_kind == "salary":
            changes["counter_salary_min"] = float(payload.counter_salary_min)
            changes["counter_salary_max"] = float(payload.counter_salary_max)
        else:
            for field_name, value in _supplied_hourly_counters(payload).items():
                changes[field_name] = float(value)
    if agreed_rate is not None:
        changes["agreed_hourly_rate"] = agreed_rate
    return changes


def _next_steps(response: str, actor: str) -> str:
    if response == "accepted":
        return "The rate is agreed and the job has been scheduled"
    if response == "declined":
        return "The negotiation is closed"
    other = PROFESSIONAL if actor == CLINIC else CLINIC
    return f"Waiting for the {other} to respond to the counter offer"


def _supplied_hourly_counters(payload: NegotiationResponse) -> dict[str, Any]:
    supplied = {}
    for field_name in COUNTER_RATE_FIELDS.values():
        value = getattr(payload, field_name)
        if value is not None:
            supplied[field_name] = value
    return supplied


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _first_number(*values: Any) -> float | None:
    for value in values:
        if _is_number(value):
            return float(value)
    return None


def _wire_name(field_name: str) -> str:
    head, *rest = field_name.split("_")
    return head + "".join(part.title() for part in rest)
