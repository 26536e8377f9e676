from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from staffing_api.core.errors import ConflictError
from staffing_api.services.applications import find_application, write_application_status

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

OUTCOME_APPLICATION_STATUS = {
    "accepted": "scheduled",
    "declined": "declined",
    "counter_offer": "negotiating",
}


@dataclass(slots=True)
class NegotiationOutcome:
    application_id: str
    negotiation_id: str
    actor: str
    response: str
    agreed_hourly_rate: float | None = None


async def propagate_outcome(repository, outcome: NegotiationOutcome) -> dict[str, Any]:
    """Apply a negotiation outcome to the application it belongs to.

    The negotiation only carries the application id, so the application's
    (job_id, professional_user_sub) key is resolved by lookup before the write.
    Re-driving an outcome that was already applied returns the application as is.
    """
    target = OUTCOME_APPLICATION_STATUS[outcome.response]
    with tracer.start_as_current_span("negotiation.propagate_outcome") as span:
        span.set_attribute("application.id", outcome.application_id)
        span.set_attribute("application.target_status", target)

        application = await find_application(repository, outcome.application_id)
        extra_changes: dict[str, Any] = {}
        if outcome.agreed_hourly_rate is not None:
            # Downstream consumers read either name.
            extra_changes["accepted_hourly_rate"] = outcome.agreed_hourly_rate
            extra_changes["accepted_rate"] = outcome.agreed_hourly_rate

        if application.get("status") == target and target != "negotiating":
            if all(application.get(name) == value for name, value in extra_changes.items()):
                return application

        try:
            updated = await write_application_status(repository, application, target, extra_changes=extra_changes)
        except ConflictError:
            current = await find_application(repository, outcome.application_id)
            if current.get("status") == target:
                return current
            raise

    logger.info(
        "negotiation outcome applied application_id=%s negotiation_id=%s response=%s status=%s",
        outcome.application_id,
        outcome.negotiation_id,
        outcome.response,
        target,
    )
    return updated
