"""Domain error taxonomy shared by the lifecycle and negotiation services.

Every client-facing error carries a stable ``code`` so callers can branch on it,
plus optional ``details`` (for example the valid next states of a posting).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status


class DomainError(Exception):
    code = "domain_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail


class ValidationError(DomainError):
    code = "validation_error"


class MissingRequiredFieldError(ValidationError):
    code = "missing_required_field"


class NotFoundError(DomainError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(DomainError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(DomainError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class InvalidTransitionError(DomainError):
    code = "invalid_transition"


class WrongJobTypeError(DomainError):
    code = "wrong_job_type"


class InvalidCounterOfferError(DomainError):
    code = "invalid_counter_offer"


class NothingToAcceptError(DomainError):
    code = "nothing_to_accept"


class InternalError(DomainError):
    code = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


@dataclass(slots=True)
class PartialFailure:
    """One dependent record a saga step could not update; logged, never raised."""

    item_id: str
    reason: str


def to_http_exception(exc: DomainError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
