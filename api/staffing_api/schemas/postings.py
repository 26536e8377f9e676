from datetime import date, datetime
from typing import Literal

from pydantic import Field

from staffing_api.schemas.common import CamelModel

JobType = Literal["temporary", "multi_day_consulting", "permanent"]
PostingStatus = Literal["open", "scheduled", "action_needed", "completed"]


class PostingCreateRequest(CamelModel):
    job_type: JobType
    clinic_id: str | None = None
    title: str | None = Field(default=None, max_length=200)
    hourly_rate: float | None = None
    salary_min: float | None = None
    salary_max: float | None = None
    dates: list[date] = Field(default_factory=list)
    start_time: str | None = None
    end_time: str | None = None


class StatusHistoryEntry(CamelModel):
    from_status: str
    to_status: str
    changed_at: datetime
    changed_by: str
    notes: str | None = None


class PostingOut(CamelModel):
    job_id: str
    clinic_user_sub: str
    job_type: JobType
    status: PostingStatus
    clinic_id: str | None = None
    title: str | None = None
    hourly_rate: float | None = None
    salary_min: float | None = None
    salary_max: float | None = None
    dates: list[str] = Field(default_factory=list)
    start_time: str | None = None
    end_time: str | None = None
    status_notes: str | None = None
    accepted_professional_user_sub: str | None = None
    scheduled_date: date | None = None
    completion_notes: str | None = None
    completed_at: datetime | None = None
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class StatusTransitionRequest(CamelModel):
    status: str
    notes: str | None = None
    accepted_professional_user_sub: str | None = None
    scheduled_date: date | None = None
    completion_notes: str | None = None


class StatusTransitionOut(CamelModel):
    job_id: str
    previous_status: PostingStatus
    new_status: PostingStatus
    updated_at: datetime
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)


class PartialFailureOut(CamelModel):
    item_id: str
    reason: str


class CascadeDeleteOut(CamelModel):
    job_id: str
    job_type: JobType
    affected_applications: int
    application_handling: str
    failed_applications: list[PartialFailureOut] = Field(default_factory=list)
