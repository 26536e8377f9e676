from __future__ import annotations

import copy
import hashlib
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone
from typing import Any

from staffing_api.services.repository import (
    BonusAwardRecord,
    MachineCredentialRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
)

LOCAL_MODULE_ID = "local-bonus-processor"
LOCAL_MODULE_KEY = "local-bonus-processor-key"
LOCAL_MODULE_SCOPES = ["change_feed:consume", "referrals:read", "referrals:write"]


class InMemoryStore:
    """Process-local store with the same single-item semantics as the Postgres repository.

    Each method touches exactly one record (or appends one change record), which
    mirrors the single-statement rule of ``PostgresRepository``.
    """

    def __init__(self) -> None:
        self.postings: dict[tuple[str, str], dict[str, Any]] = {}
        self.applications: dict[tuple[str, str], dict[str, Any]] = {}
        self.negotiations: dict[tuple[str, str], dict[str, Any]] = {}
        self.referrals: dict[str, dict[str, Any]] = {}
        self.referral_balances: dict[str, float] = {}
        self.bonus_award_markers: set[str] = set()
        self.change_feed: list[dict[str, Any]] = []
        self.machine_credentials: dict[str, list[MachineCredentialRecord]] = {
            LOCAL_MODULE_ID: [
                MachineCredentialRecord(
                    module_id=LOCAL_MODULE_ID,
                    scopes=list(LOCAL_MODULE_SCOPES),
                    key_hash=hashlib.sha256(LOCAL_MODULE_KEY.encode("utf-8")).hexdigest(),
                )
            ]
        }
        self._next_event_id = 1

    async def close(self) -> None:
        return None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        return list(self.machine_credentials.get(module_id, []))

    # Postings

    async def create_posting(self, posting: dict[str, Any]) -> dict[str, Any]:
        key = (posting["clinic_user_sub"], posting["job_id"])
        if key in self.postings:
            raise RepositoryConflictError("posting already exists")
        record = copy.deepcopy(posting)
        record.setdefault("status_history", [])
        self.postings[key] = record
        return copy.deepcopy(record)

    async def get_posting(self, *, clinic_user_sub: str, job_id: str) -> dict[str, Any]:
        record = self.postings.get((clinic_user_sub, job_id))
        if record is None:
            raise RepositoryNotFoundError("posting not found")
        return copy.deepcopy(record)

    async def find_posting(self, job_id: str) -> dict[str, Any]:
        for (_, stored_job_id), record in self.postings.items():
            if stored_job_id == job_id:
                return copy.deepcopy(record)
        raise RepositoryNotFoundError("posting not found")

    async def update_posting_status(
        self,
        *,
        clinic_user_sub: str,
        job_id: str,
        expected_status: str,
        changes: dict[str, Any],
        history_entry: dict[str, Any],
    ) -> dict[str, Any]:
        record = self.postings.get((clinic_user_sub, job_id))
        if record is None:
            raise RepositoryNotFoundError("posting not found")
        if record.get("status") != expected_status:
            raise RepositoryConflictError("posting status changed concurrently")
        record.update(copy.deepcopy(changes))
        record["status_history"] = [*record.get("status_history", []), copy.deepcopy(history_entry)]
        return copy.deepcopy(record)

    async def delete_posting(self, *, clinic_user_sub: str, job_id: str) -> bool:
        return self.postings.pop((clinic_user_sub, job_id), None) is not None

    # Applications

    async def create_application(self, application: dict[str, Any]) -> dict[str, Any]:
        key = (application["job_id"], application["professional_user_sub"])
        if key in self.applications:
            raise RepositoryConflictError("application already exists")
        record = copy.deepcopy(application)
        self.applications[key] = record
        self._emit_change("INSERT", key, old=None, new=record)
        return copy.deepcopy(record)

    async def get_application(self, *, job_id: str, professional_user_sub: str) -> dict[str, Any]:
        record = self.applications.get((job_id, professional_user_sub))
        if record is None:
            raise RepositoryNotFoundError("application not found")
        return copy.deepcopy(record)

    async def find_application(self, application_id: str) -> dict[str, Any]:
        for record in self.applications.values():
            if record.get("application_id") == application_id:
                return copy.deepcopy(record)
        raise RepositoryNotFoundError("application not found")

    async def list_applications_for_job(
        self,
        job_id: str,
        *,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            copy.deepcopy(record)
            for (stored_job_id, _), record in self.applications.items()
            if stored_job_id == job_id and (wanted is None or record.get("status") in wanted)
        ]
        rows.sort(key=lambda row: str(row.get("applied_at") or ""))
        return rows

    async def update_application(
        self,
        *,
        job_id: str,
        professional_user_sub: str,
        changes: dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        key = (job_id, professional_user_sub)
        record = self.applications.get(key)
        if record is None:
            raise RepositoryNotFoundError("application not found")
        if expected_statuses is not None and record.get("status") not in set(expected_statuses):
            raise RepositoryConflictError(f"application status is {record.get('status')}")
        before = copy.deepcopy(record)
        record.update(copy.deepcopy(changes))
        self._emit_change("MODIFY", key, old=before, new=record)
        return copy.deepcopy(record)

    # Negotiations

    async def create_negotiation(self, negotiation: dict[str, Any]) -> dict[str, Any]:
        key = (negotiation["application_id"], negotiation["negotiation_id"])
        if key in self.negotiations:
            raise RepositoryConflictError("negotiation already exists")
        self.negotiations[key] = copy.deepcopy(negotiation)
        return copy.deepcopy(negotiation)

    async def get_negotiation(self, *, application_id: str, negotiation_id: str) -> dict[str, Any]:
        record = self.negotiations.get((application_id, negotiation_id))
        if record is None:
            raise RepositoryNotFoundError("negotiation not found")
        return copy.deepcopy(record)

    async def list_negotiations_for_application(self, application_id: str) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(record) for (stored, _), record in self.negotiations.items() if stored == application_id]
        rows.sort(key=lambda row: str(row.get("created_at") or ""))
        return rows

    async def list_negotiations_for_job(self, job_id: str) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(record) for record in self.negotiations.values() if record.get("job_id") == job_id]
        rows.sort(key=lambda row: str(row.get("created_at") or ""))
        return rows

    async def update_negotiation(
        self,
        *,
        application_id: str,
        negotiation_id: str,
        changes: dict[str, Any],
        expected_updated_at: datetime | None,
    ) -> dict[str, Any]:
        record = self.negotiations.get((application_id, negotiation_id))
        if record is None:
            raise RepositoryNotFoundError("negotiation not found")
        if record.get("updated_at") != expected_updated_at:
            raise RepositoryConflictError("negotiation changed concurrently")
        record.update(copy.deepcopy(changes))
        return copy.deepcopy(record)

    # Referrals

    async def create_referral(self, referral: dict[str, Any]) -> dict[str, Any]:
        referred_user_sub = referral["referred_user_sub"]
        if referred_user_sub in self.referrals:
            raise RepositoryConflictError("referral already exists for this user")
        self.referrals[referred_user_sub] = copy.deepcopy(referral)
        return copy.deepcopy(referral)

    async def get_referral(self, referred_user_sub: str) -> dict[str, Any] | None:
        record = self.referrals.get(referred_user_sub)
        return copy.deepcopy(record) if record is not None else None

    async def award_referral_bonus(self, *, referrer_user_sub: str, amount: float, event_id: str) -> BonusAwardRecord:
        if event_id in self.bonus_award_markers:
            return BonusAwardRecord(applied=False, referral_bonus=self.referral_balances.get(referrer_user_sub, 0.0))
        self.bonus_award_markers.add(event_id)
        balance = self.referral_balances.get(referrer_user_sub, 0.0) + amount
        self.referral_balances[referrer_user_sub] = balance
        return BonusAwardRecord(applied=True, referral_bonus=balance)

    async def get_referral_bonus(self, referrer_user_sub: str) -> float:
        return self.referral_balances.get(referrer_user_sub, 0.0)

    # Change feed

    async def claim_application_changes(self, *, limit: int, lease_seconds: int) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        claimed: list[dict[str, Any]] = []
        for change in self.change_feed:
            if len(claimed) >= limit:
                break
            if change["acked_at"] is not None:
                continue
            lease = change["lease_expires_at"]
            if lease is not None and lease > now:
                continue
            change["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
            claimed.append(_change_to_dict(change))
        return claimed

    async def ack_application_changes(self, event_ids: Iterable[str]) -> int:
        wanted = set(event_ids)
        acked = 0
        now = datetime.now(timezone.utc)
        for change in self.change_feed:
            if change["event_id"] in wanted and change["acked_at"] is None:
                change["acked_at"] = now
                acked += 1
        return acked

    def _emit_change(
        self,
        event_name: str,
        key: tuple[str, str],
        *,
        old: dict[str, Any] | None,
        new: dict[str, Any] | None,
    ) -> None:
        self.change_feed.append(
            {
                "event_id": str(self._next_event_id),
                "event_name": event_name,
                "keys": {"job_id": key[0], "professional_user_sub": key[1]},
                "old_image": _jsonable(old) if old is not None else None,
                "new_image": _jsonable(new) if new is not None else None,
                "created_at": datetime.now(timezone.utc),
                "lease_expires_at": None,
                "acked_at": None,
            }
        )
        self._next_event_id += 1


def _change_to_dict(change: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": change["event_id"],
        "event_name": change["event_name"],
        "keys": dict(change["keys"]),
        "old_image": copy.deepcopy(change["old_image"]),
        "new_image": copy.deepcopy(change["new_image"]),
        "created_at": change["created_at"],
    }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value
