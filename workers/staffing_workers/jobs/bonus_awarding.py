"""Referral bonus side effect of an application reaching ``completed``.

Records arrive at least once and possibly out of order across applications.
Only the edge into ``completed`` counts, and the award call carries the change
record's event id so the API increments the balance once per event even when a
batch is redelivered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

COMPLETED = "completed"


@dataclass(slots=True)
class ChangeRecord:
    event_id: str
    event_name: str
    keys: dict[str, Any]
    old_image: dict[str, Any] | None
    new_image: dict[str, Any] | None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ChangeRecord:
        event_id = payload.get("eventId")
        if event_id in (None, ""):
            raise ValueError("change record is missing eventId")
        return cls(
            event_id=str(event_id),
            event_name=str(payload.get("eventName") or ""),
            keys=payload.get("keys") or {},
            old_image=payload.get("oldImage"),
            new_image=payload.get("newImage"),
        )

    @property
    def professional_user_sub(self) -> str | None:
        image = self.new_image or {}
        return image.get("professional_user_sub") or self.keys.get("professional_user_sub")


@dataclass(slots=True)
class BatchReport:
    processed: list[str] = field(default_factory=list)
    awarded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def is_completion_edge(record: ChangeRecord) -> bool:
    if record.event_name != "MODIFY" or not record.new_image:
        return False
    if record.new_image.get("status") != COMPLETED:
        return False
    return (record.old_image or {}).get("status") != COMPLETED


async def handle_change(client, record: ChangeRecord, *, bonus_amount: float) -> bool:
    """Award the referrer for one record; returns whether a new increment was applied."""
    if not is_completion_edge(record):
        return False

    professional_user_sub = record.professional_user_sub
    if not professional_user_sub:
        logger.warning("completion event without professional id event_id=%s", record.event_id)
        return False

    referral = await client.get_referral(professional_user_sub)
    if referral is None:
        logger.info("no referral for professional_user_sub=%s; nothing to award", professional_user_sub)
        return False

    result = await client.award_bonus(
        referrer_user_sub=referral["referrerUserSub"],
        amount=bonus_amount,
        event_id=record.event_id,
    )
    applied = bool(result.get("applied"))
    logger.info(
        "referral bonus event_id=%s referrer=%s applied=%s balance=%s",
        record.event_id,
        referral["referrerUserSub"],
        applied,
        result.get("referralBonus"),
    )
    return applied


async def process_change_batch(client, payloads: list[dict[str, Any]], *, bonus_amount: float) -> BatchReport:
    """Handle each record independently; one bad record never stops its siblings."""
    report = BatchReport()
    for payload in payloads:
        event_id = str(payload.get("eventId"))
        with tracer.start_as_current_span("worker.bonus_change") as span:
            span.set_attribute("change.event_id", event_id)
            try:
                record = ChangeRecord.from_payload(payload)
                if await handle_change(client, record, bonus_amount=bonus_amount):
                    report.awarded.append(record.event_id)
            except Exception as exc:
                logger.exception("bonus processing failed for event_id=%s", event_id)
                report.failed[event_id] = str(exc) or type(exc).__name__
                continue
            report.processed.append(record.event_id)
    return report
