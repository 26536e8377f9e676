from datetime import datetime
from typing import Literal

from staffing_api.schemas.common import CamelModel

NegotiationResponseKind = Literal["accepted", "declined", "counter_offer"]


class NegotiationResponseRequest(CamelModel):
    response: NegotiationResponseKind
    message: str | None = None
    counter_salary_min: float | None = None
    counter_salary_max: float | None = None
    clinic_counter_hourly_rate: float | None = None
    professional_counter_hourly_rate: float | None = None


class NegotiationResponseOut(CamelModel):
    negotiation_id: str
    application_id: str
    job_id: str
    actor: Literal["clinic", "professional"]
    response: NegotiationResponseKind
    application_status: str
    accepted_hourly_rate: float | None = None
    responded_at: datetime
    next_steps: str


class NegotiationOut(CamelModel):
    application_id: str
    negotiation_id: str
    job_id: str
    rate_kind: Literal["hourly", "salary"]
    negotiation_status: str
    proposed_hourly_rate: float | None = None
    proposed_salary_min: float | None = None
    proposed_salary_max: float | None = None
    clinic_counter_hourly_rate: float | None = None
    professional_counter_hourly_rate: float | None = None
    counter_salary_min: float | None = None
    counter_salary_max: float | None = None
    agreed_hourly_rate: float | None = None
    clinic_response: str | None = None
    clinic_message: str | None = None
    clinic_responded_at: datetime | None = None
    professional_response: str | None = None
    professional_message: str | None = None
    professional_responded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
