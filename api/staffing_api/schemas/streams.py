from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from staffing_api.schemas.common import CamelModel


class ClaimChangesRequest(CamelModel):
    limit: int = Field(default=25, ge=1, le=500)
    lease_seconds: int | None = Field(default=None, ge=5, le=3600)


class ChangeRecordOut(CamelModel):
    event_id: str
    event_name: Literal["INSERT", "MODIFY", "REMOVE"]
    keys: dict[str, Any]
    old_image: dict[str, Any] | None = None
    new_image: dict[str, Any] | None = None
    created_at: datetime


class AckChangesRequest(CamelModel):
    event_ids: list[str] = Field(min_length=1)


class AckChangesOut(CamelModel):
    acknowledged: int
