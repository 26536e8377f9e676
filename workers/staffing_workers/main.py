from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from staffing_workers.core.config import Settings, get_settings
from staffing_workers.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from staffing_workers.jobs.bonus_awarding import process_change_batch
from staffing_workers.services.feed_client import FeedClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_cycle(client: FeedClient, settings: Settings) -> int:
    """Claim, process and acknowledge one batch; returns the batch size.

    Records that failed are left unacknowledged so the lease expiry redelivers them.
    """
    with tracer.start_as_current_span("worker.poll_cycle") as span:
        changes = await client.claim_changes(
            limit=settings.claim_batch_size,
            lease_seconds=settings.claim_lease_seconds,
        )
        span.set_attribute("change_feed.batch_size", len(changes))
        if not changes:
            return 0

        report = await process_change_batch(client, changes, bonus_amount=settings.referral_bonus_amount)
        acknowledged = await client.ack_changes(report.processed)
        if report.failed:
            logger.warning(
                "change batch left %s records for redelivery: %s",
                len(report.failed),
                sorted(report.failed),
            )
        logger.info(
            "change batch done size=%s awarded=%s acknowledged=%s",
            len(changes),
            len(report.awarded),
            acknowledged,
        )
        return len(changes)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = FeedClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds
    try:
        while True:
            try:
                claimed = await run_cycle(client, settings)
                backoff = settings.poll_interval_seconds
                if not claimed:
                    await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - network dependent
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
