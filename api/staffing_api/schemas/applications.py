from datetime import date, datetime

from pydantic import Field

from staffing_api.schemas.common import CamelModel


class ApplicationSubmitRequest(CamelModel):
    message: str | None = Field(default=None, max_length=2000)
    proposed_rate: float | None = None
    proposed_salary_min: float | None = None
    proposed_salary_max: float | None = None
    availability: str | None = None
    start_date: date | None = None
    notes: str | None = None


class ApplicationUpdateRequest(CamelModel):
    message: str | None = Field(default=None, max_length=2000)
    proposed_rate: float | None = None
    availability: str | None = None
    start_date: date | None = None
    notes: str | None = None


class ApplicationOut(CamelModel):
    application_id: str
    job_id: str
    professional_user_sub: str
    clinic_user_sub: str | None = None
    clinic_id: str | None = None
    job_type: str | None = None
    status: str
    proposed_rate: float | None = None
    proposed_salary_min: float | None = None
    proposed_salary_max: float | None = None
    message: str | None = None
    availability: str | None = None
    start_date: date | None = None
    notes: str | None = None
    negotiation_id: str | None = None
    accepted_hourly_rate: float | None = None
    accepted_rate: float | None = None
    applied_at: datetime
    updated_at: datetime
