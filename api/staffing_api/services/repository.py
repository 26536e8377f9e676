from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from staffing_api.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a conditional write's precondition does not hold."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class BonusAwardRecord:
    applied: bool
    referral_bonus: float


POSTING_COLUMNS = (
    "clinic_user_sub",
    "job_id",
    "job_type",
    "status",
    "clinic_id",
    "title",
    "hourly_rate",
    "salary_min",
    "salary_max",
    "dates",
    "start_time",
    "end_time",
    "status_notes",
    "accepted_professional_user_sub",
    "scheduled_date",
    "completion_notes",
    "completed_at",
    "status_history",
    "created_at",
    "updated_at",
)
APPLICATION_COLUMNS = (
    "job_id",
    "professional_user_sub",
    "application_id",
    "clinic_user_sub",
    "clinic_id",
    "job_type",
    "status",
    "proposed_rate",
    "proposed_salary_min",
    "proposed_salary_max",
    "message",
    "availability",
    "start_date",
    "notes",
    "negotiation_id",
    "accepted_hourly_rate",
    "accepted_rate",
    "applied_at",
    "updated_at",
)
NEGOTIATION_COLUMNS = (
    "application_id",
    "negotiation_id",
    "job_id",
    "professional_user_sub",
    "clinic_user_sub",
    "rate_kind",
    "negotiation_status",
    "proposed_hourly_rate",
    "proposed_salary_min",
    "proposed_salary_max",
    "clinic_counter_hourly_rate",
    "professional_counter_hourly_rate",
    "counter_salary_min",
    "counter_salary_max",
    "agreed_hourly_rate",
    "clinic_response",
    "clinic_message",
    "clinic_responded_at",
    "professional_response",
    "professional_message",
    "professional_responded_at",
    "message",
    "created_at",
    "updated_at",
)
REFERRAL_COLUMNS = ("referred_user_sub", "referral_id", "referrer_user_sub", "status", "created_at")
JSON_COLUMNS = {"dates", "status_history"}

# Key columns are never rewritten by an update.
POSTING_KEY_COLUMNS = {"clinic_user_sub", "job_id"}
APPLICATION_KEY_COLUMNS = {"job_id", "professional_user_sub", "application_id"}
NEGOTIATION_KEY_COLUMNS = {"application_id", "negotiation_id"}


class PostgresRepository:
    """One SQL statement per method.

    No method opens a transaction: every write is single-row atomic and every
    precondition is a ``where`` clause on that row, so multi-entity operations
    in the services are sagas of independent steps.
    """

    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select module_id, scopes, key_hash
            from service_modules
            where module_id = $1
              and enabled = true
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    # Postings

    async def create_posting(self, posting: dict[str, Any]) -> dict[str, Any]:
        record = {"status_history": [], **posting}
        row = await self._insert("job_postings", POSTING_COLUMNS, record)
        if not row:
            raise RepositoryConflictError("posting already exists")
        return self._posting_row_to_dict(row)

    async def get_posting(self, *, clinic_user_sub: str, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select * from job_postings where clinic_user_sub = $1 and job_id = $2",
            clinic_user_sub,
            job_id,
        )
        if not row:
            raise RepositoryNotFoundError("posting not found")
        return self._posting_row_to_dict(row)

    async def find_posting(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from job_postings where job_id = $1 limit 1", job_id)
        if not row:
            raise RepositoryNotFoundError("posting not found")
        return self._posting_row_to_dict(row)

    async def update_posting_status(
        self,
        *,
        clinic_user_sub: str,
        job_id: str,
        expected_status: str,
        changes: dict[str, Any],
        history_entry: dict[str, Any],
    ) -> dict[str, Any]:
        set_clause, args = self._build_set_clause(changes, POSTING_COLUMNS, POSTING_KEY_COLUMNS, start_index=4)
        args.append(json.dumps(history_entry))
        history_index = len(args) + 3
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_postings
            set {set_clause},
              status_history = coalesce(status_history, '[]'::jsonb) || jsonb_build_array(${history_index}::jsonb)
            where clinic_user_sub = $1
              and job_id = $2
              and status = $3
            returning *
            """,
            clinic_user_sub,
            job_id,
            expected_status,
            *args,
        )
        if row:
            return self._posting_row_to_dict(row)
        await self.get_posting(clinic_user_sub=clinic_user_sub, job_id=job_id)
        raise RepositoryConflictError("posting status changed concurrently")

    async def delete_posting(self, *, clinic_user_sub: str, job_id: str) -> bool:
        pool = await self._get_pool()
        deleted = await pool.fetchval(
            "delete from job_postings where clinic_user_sub = $1 and job_id = $2 returning job_id",
            clinic_user_sub,
            job_id,
        )
        return deleted is not None

    # Applications

    async def create_application(self, application: dict[str, Any]) -> dict[str, Any]:
        row = await self._insert("job_applications", APPLICATION_COLUMNS, application)
        if not row:
            raise RepositoryConflictError("application already exists")
        return self._plain_row_to_dict(row)

    async def get_application(self, *, job_id: str, professional_user_sub: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select * from job_applications where job_id = $1 and professional_user_sub = $2",
            job_id,
            professional_user_sub,
        )
        if not row:
            raise RepositoryNotFoundError("application not found")
        return self._plain_row_to_dict(row)

    async def find_application(self, application_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from job_applications where application_id = $1", application_id)
        if not row:
            raise RepositoryNotFoundError("application not found")
        return self._plain_row_to_dict(row)

    async def list_applications_for_job(
        self,
        job_id: str,
        *,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        if statuses is None:
            rows = await pool.fetch(
                "select * from job_applications where job_id = $1 order by applied_at",
                job_id,
            )
        else:
            rows = await pool.fetch(
                "select * from job_applications where job_id = $1 and status = any($2::text[]) order by applied_at",
                job_id,
                sorted(statuses),
            )
        return [self._plain_row_to_dict(row) for row in rows]

    async def update_application(
        self,
        *,
        job_id: str,
        professional_user_sub: str,
        changes: dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        set_clause, args = self._build_set_clause(
            changes, APPLICATION_COLUMNS, APPLICATION_KEY_COLUMNS, start_index=4
        )
        expected = sorted(expected_statuses) if expected_statuses is not None else None
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_applications
            set {set_clause}
            where job_id = $1
              and professional_user_sub = $2
              and ($3::text[] is null or status = any($3::text[]))
            returning *
            """,
            job_id,
            professional_user_sub,
            expected,
            *args,
        )
        if row:
            return self._plain_row_to_dict(row)
        current = await self.get_application(job_id=job_id, professional_user_sub=professional_user_sub)
        raise RepositoryConflictError(f"application status is {current.get('status')}")

    # Negotiations

    async def create_negotiation(self, negotiation: dict[str, Any]) -> dict[str, Any]:
        row = await self._insert("job_negotiations", NEGOTIATION_COLUMNS, negotiation)
        if not row:
            raise RepositoryConflictError("negotiation already exists")
        return self._plain_row_to_dict(row)

    async def get_negotiation(self, *, application_id: str, negotiation_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select * from job_negotiations where application_id = $1 and negotiation_id = $2",
            application_id,
            negotiation_id,
        )
        if not row:
            raise RepositoryNotFoundError("negotiation not found")
        return self._plain_row_to_dict(row)

    async def list_negotiations_for_application(self, application_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select * from job_negotiations where application_id = $1 order by created_at",
            application_id,
        )
        return [self._plain_row_to_dict(row) for row in rows]

    async def list_negotiations_for_job(self, job_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select * from job_negotiations where job_id = $1 order by created_at",
            job_id,
        )
        return [self._plain_row_to_dict(row) for row in rows]

    async def update_negotiation(
        self,
        *,
        application_id: str,
        negotiation_id: str,
        changes: dict[str, Any],
        expected_updated_at: datetime | None,
    ) -> dict[str, Any]:
        set_clause, args = self._build_set_clause(
            changes, NEGOTIATION_COLUMNS, NEGOTIATION_KEY_COLUMNS, start_index=4
        )
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_negotiations
            set {set_clause}
            where application_id = $1
              and negotiation_id = $2
              and updated_at is not distinct from $3
            returning *
            """,
            application_id,
            negotiation_id,
            expected_updated_at,
            *args,
        )
        if row:
            return self._plain_row_to_dict(row)
        await self.get_negotiation(application_id=application_id, negotiation_id=negotiation_id)
        raise RepositoryConflictError("negotiation changed concurrently")

    # Referrals

    async def create_referral(self, referral: dict[str, Any]) -> dict[str, Any]:
        row = await self._insert("referrals", REFERRAL_COLUMNS, referral)
        if not row:
            raise RepositoryConflictError("referral already exists for this user")
        return self._plain_row_to_dict(row)

    async def get_referral(self, referred_user_sub: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from referrals where referred_user_sub = $1", referred_user_sub)
        return self._plain_row_to_dict(row) if row else None

    async def award_referral_bonus(self, *, referrer_user_sub: str, amount: float, event_id: str) -> BonusAwardRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            with marker as (
              insert into referral_bonus_awards (event_id, referrer_user_sub, amount)
              values ($1, $2, $3)
              on conflict (event_id) do nothing
              returning event_id
            ),
            balance as (
              insert into referral_balances (referrer_user_sub, referral_bonus)
              select $2, $3 from marker
              on conflict (referrer_user_sub) do update
              set
                referral_bonus = coalesce(referral_balances.referral_bonus, 0) + excluded.referral_bonus,
                updated_at = now()
              returning referral_bonus
            )
            select
              exists(select 1 from marker) as applied,
              coalesce(
                (select referral_bonus from balance),
                (select referral_bonus from referral_balances where referrer_user_sub = $2),
                0
              ) as referral_bonus
            """,
            event_id,
            referrer_user_sub,
            amount,
        )
        return BonusAwardRecord(applied=bool(row["applied"]), referral_bonus=float(row["referral_bonus"]))

    async def get_referral_bonus(self, referrer_user_sub: str) -> float:
        pool = await self._get_pool()
        value = await pool.fetchval(
            "select referral_bonus from referral_balances where referrer_user_sub = $1",
            referrer_user_sub,
        )
        return float(value) if value is not None else 0.0

    # Change feed

    async def claim_application_changes(self, *, limit: int, lease_seconds: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update application_change_feed
            set lease_expires_at = now() + make_interval(secs => $2)
            where event_id in (
              select event_id
              from application_change_feed
              where acked_at is null
                and (lease_expires_at is null or lease_expires_at <= now())
              order by event_id
              limit $1
              for update skip locked
            )
            returning event_id::text as event_id, event_name, keys, old_image, new_image, created_at
            """,
            limit,
            lease_seconds,
        )
        changes = [self._change_row_to_dict(row) for row in rows]
        changes.sort(key=lambda change: int(change["event_id"]))
        return changes

    async def ack_application_changes(self, event_ids: Iterable[str]) -> int:
        ids = [int(event_id) for event_id in event_ids]
        if not ids:
            return 0
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update application_change_feed
            set acked_at = now()
            where event_id = any($1::bigint[])
              and acked_at is null
            returning event_id
            """,
            ids,
        )
        return len(rows)

    async def _insert(self, table: str, columns: tuple[str, ...], record: dict[str, Any]) -> asyncpg.Record | None:
        present = [column for column in columns if column in record]
        placeholders = [
            f"${index}::jsonb" if column in JSON_COLUMNS else f"${index}"
            for index, column in enumerate(present, start=1)
        ]
        values = [json.dumps(record[column]) if column in JSON_COLUMNS else record[column] for column in present]
        pool = await self._get_pool()
        return await pool.fetchrow(
            f"""
            insert into {table} ({", ".join(present)})
            values ({", ".join(placeholders)})
            on conflict do nothing
            returning *
            """,
            *values,
        )

    @staticmethod
    def _build_set_clause(
        changes: dict[str, Any],
        columns: tuple[str, ...],
        key_columns: set[str],
        *,
        start_index: int,
    ) -> tuple[str, list[Any]]:
        assignments: list[str] = []
        args: list[Any] = []
        for column, value in changes.items():
            if column not in columns or column in key_columns:
                raise ValueError(f"column {column} cannot be updated")
            index = start_index + len(args)
            if column in JSON_COLUMNS:
                assignments.append(f"{column} = ${index}::jsonb")
                args.append(json.dumps(value))
            else:
                assignments.append(f"{column} = ${index}")
                args.append(value)
        if not assignments:
            raise ValueError("no columns to update")
        return ", ".join(assignments), args

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("DS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _plain_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return dict(row.items())

    @classmethod
    def _posting_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        record = cls._plain_row_to_dict(row)
        for column in JSON_COLUMNS:
            value = record.get(column)
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    value = None
            record[column] = value if isinstance(value, list) else []
        return record

    @staticmethod
    def _change_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        def image(value: Any) -> dict[str, Any] | None:
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    return None
            return value if isinstance(value, dict) else None

        return {
            "event_id": row["event_id"],
            "event_name": row["event_name"],
            "keys": image(row["keys"]) or {},
            "old_image": image(row["old_image"]),
            "new_image": image(row["new_image"]),
            "created_at": row["created_at"],
        }


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from staffing_api.services.store import InMemoryStore

        return InMemoryStore()  # type: ignore[return-value]
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
