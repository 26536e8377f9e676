"""Status vocabularies for postings, applications and negotiations."""

from __future__ import annotations

JOB_TYPES = ("temporary", "multi_day_consulting", "permanent")
HOURLY_JOB_TYPES = {"temporary", "multi_day_consulting"}

POSTING_STATUSES = ("open", "scheduled", "action_needed", "completed")
# Postings written before the lifecycle rework carry "active"; it means "open".
LEGACY_POSTING_STATUS_ALIASES = {"active": "open"}

APPLICATION_STATUSES = (
    "pending",
    "negotiating",
    "accepted",
    "scheduled",
    "declined",
    "rejected",
    "job_cancelled",
    "completed",
    "withdrawn",
)
TERMINAL_APPLICATION_STATUSES = frozenset({"declined", "rejected", "job_cancelled", "completed", "withdrawn"})
# Applications a posting cancellation must flag; everything else is left as is.
CANCELLABLE_APPLICATION_STATUSES = frozenset({"pending", "accepted", "negotiating"})
FILLED_APPLICATION_STATUSES = frozenset({"accepted", "scheduled"})

APPLICATION_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset(
        {"negotiating", "accepted", "scheduled", "declined", "rejected", "withdrawn", "job_cancelled"}
    ),
    "negotiating": frozenset(
        {"negotiating", "accepted", "scheduled", "declined", "rejected", "withdrawn", "job_cancelled"}
    ),
    "accepted": frozenset({"scheduled", "completed", "rejected", "job_cancelled"}),
    "scheduled": frozenset({"completed"}),
}

NEGOTIATION_RESPONSES = ("accepted", "declined", "counter_offer")
CLOSED_NEGOTIATION_STATUSES = frozenset({"accepted", "declined"})


def normalize_posting_status(raw: str | None) -> str:
    if not raw:
        return "open"
    return LEGACY_POSTING_STATUS_ALIASES.get(raw, raw)


def rate_kind_for_job_type(job_type: str | None) -> str:
    return "salary" if (job_type or "").lower() == "permanent" else "hourly"


def application_status_predecessors(target: str) -> frozenset[str]:
    """Statuses from which an application may move to ``target``."""
    return frozenset(source for source, targets in APPLICATION_STATUS_TRANSITIONS.items() if target in targets)


def can_transition_application(current: str, target: str) -> bool:
    return target in APPLICATION_STATUS_TRANSITIONS.get(current, frozenset())
