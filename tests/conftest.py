from __future__ import annotations

import hashlib
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

import casting_pipeline.core.security as security
from casting_pipeline.core.config import get_settings
from casting_pipeline.main import app
from casting_pipeline.services.repository import (
    JOB_QUEUES,
    JOB_STATUSES,
    PostgresRepository,
    RepositoryConflictError,
    RepositoryDuplicateError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    get_repository,
)

HUMAN_HEADERS = {"Authorization": "Bearer test-token"}
MODULE_ID = "local-scraper"
MODULE_KEY = "local-scraper-key"
MACHINE_HEADERS = {"X-Module-Id": MODULE_ID, "X-API-Key": MODULE_KEY}


class InMemoryRepository:
    """Dict-backed stand-in for PostgresRepository.

    Retry, status-transition and identifier rules are delegated to a
    database-less PostgresRepository so both share one policy.
    """

    def __init__(self, *, max_attempts: int = 3, retry_base_seconds: int = 0) -> None:
        self.policy = PostgresRepository(
            database_url=None,
            min_pool_size=1,
            max_pool_size=1,
            job_max_attempts=max_attempts,
            job_retry_base_seconds=retry_base_seconds,
            job_retry_max_seconds=600,
        )
        self.sources: dict[str, dict[str, Any]] = {}
        self.processed: dict[tuple[str, str], dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.dead_letters: dict[str, dict[str, Any]] = {}
        self.casting_calls: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    # sources

    async def create_source(
        self,
        *,
        source_type: str,
        source_identifier: str,
        source_name: str,
        is_active: bool = True,
    ) -> dict[str, Any]:
        identifier = self.policy._validate_source_identifier(source_type, source_identifier)
        if any(row["source_identifier"] == identifier for row in self.sources.values()):
            raise RepositoryConflictError("source_identifier is already registered")
        now = datetime.now(timezone.utc)
        row = {
            "id": str(uuid.uuid4()),
            "source_type": source_type,
            "source_identifier": identifier,
            "source_name": source_name.strip(),
            "is_active": is_active,
            "last_processed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self.sources[row["id"]] = row
        return dict(row)

    async def get_source(self, source_id: str) -> dict[str, Any]:
        if source_id not in self.sources:
            raise RepositoryNotFoundError("source not found")
        return dict(self.sources[source_id])

    async def list_sources(
        self,
        *,
        source_type: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [
            dict(row)
            for row in self.sources.values()
            if (source_type is None or row["source_type"] == source_type)
            and (is_active is None or row["is_active"] == is_active)
        ]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows[offset : offset + limit]

    async def update_source(
        self,
        source_id: str,
        *,
        source_type: str | None = None,
        source_identifier: str | None = None,
        source_name: str | None = None,
        is_active: bool | None = None,
    ) -> dict[str, Any]:
        row = self.sources.get(source_id)
        if row is None:
            raise RepositoryNotFoundError("source not found")
        if source_type is not None and source_type != row["source_type"]:
            raise RepositoryValidationError("source_type is immutable after creation")
        if source_identifier is not None:
            identifier = self.policy._validate_source_identifier(row["source_type"], source_identifier)
            clash = any(
                other["source_identifier"] == identifier and other_id != source_id
                for other_id, other in self.sources.items()
            )
            if clash:
                raise RepositoryConflictError("source_identifier is already registered")
            row["source_identifier"] = identifier
        if source_name is not None:
            row["source_name"] = source_name
        if is_active is not None:
            row["is_active"] = is_active
        row["updated_at"] = datetime.now(timezone.utc)
        return dict(row)

    async def deactivate_source(self, source_id: str) -> dict[str, Any]:
        return await self.update_source(source_id, is_active=False)

    async def find_active_source(self, *, source_type: str, source_identifier: str) -> dict[str, Any] | None:
        for row in self.sources.values():
            if (
                row["source_type"] == source_type
                and row["source_identifier"] == source_identifier
                and row["is_active"]
            ):
                return dict(row)
        return None

    # intake ledger

    async def has_processed_message(self, *, source_type: str, external_message_id: str) -> bool:
        return (source_type, external_message_id) in self.processed

    async def record_message_and_enqueue_extraction(
        self,
        *,
        source_id: str,
        source_type: str,
        external_message_id: str,
        payload: dict[str, Any],
    ) -> str | None:
        key = (source_type, external_message_id)
        if key in self.processed:
            return None
        now = datetime.now(timezone.utc)
        self.processed[key] = {"source_id": source_id, "processed_at": now}
        self.sources[source_id]["last_processed_at"] = now
        return self._insert_job("extraction", json.dumps(payload))

    # job queue

    async def list_queued_jobs(self, *, queues: list[str], limit: int) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        rows = [
            self._job_view(job)
            for job in self.jobs.values()
            if job["status"] == "queued" and job["queue"] in queues and job["next_run_at"] <= now
        ]
        return rows[:limit]

    async def claim_job(self, job_id: str, worker_id: str, lease_seconds: int) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job["status"] != "queued":
            raise RepositoryConflictError("job is not claimable")
        job["status"] = "claimed"
        job["locked_by"] = worker_id
        job["lease_expires_at"] = datetime.now(timezone.utc) + timedelta(seconds=lease_seconds)
        job["attempt"] += 1
        return self._job_view(job)

    async def submit_job_result(
        self,
        job_id: str,
        worker_id: str,
        status: str,
        result_json: dict[str, Any] | None,
        error_json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job["status"] != "claimed":
            raise RepositoryConflictError("job is not in claimed state")
        if job["locked_by"] != worker_id:
            raise RepositoryForbiddenError("job claimed by another worker")

        resolved_status = "done"
        if status == "failed":
            resolved_status, delay = self.policy._resolve_failed_attempt(attempt=job["attempt"])
            if delay is not None:
                job["next_run_at"] = datetime.now(timezone.utc) + timedelta(seconds=delay)
        job.update(
            status=resolved_status,
            result_json=result_json,
            error_json=error_json,
            locked_by=None,
            lease_expires_at=None,
        )
        view = self._job_view(job)

        if resolved_status == "done" and job["queue"] == "extraction":
            candidate = (result_json or {}).get("candidate")
            view["follow_up_job_id"] = None
            if (result_json or {}).get("outcome") == "extracted" and isinstance(candidate, dict):
                view["follow_up_job_id"] = self._insert_job("moderation_intake", json.dumps(candidate))
        if resolved_status == "dead_letter":
            view["dead_letter_id"] = self._insert_dead_letter(job, self.policy._error_message(error_json))
        return view

    async def requeue_expired_claimed_jobs(self, worker_id: str, limit: int) -> dict[str, int]:
        now = datetime.now(timezone.utc)
        counts = {"requeued": 0, "dead_lettered": 0}
        expired = [
            job
            for job in self.jobs.values()
            if job["status"] == "claimed" and job["lease_expires_at"] is not None and job["lease_expires_at"] <= now
        ]
        for job in expired[:limit]:
            job["locked_by"] = None
            job["lease_expires_at"] = None
            if job["attempt"] >= self.policy.job_max_attempts:
                job["status"] = "dead_letter"
                job["error_json"] = {"error": "lease_expired"}
                self._insert_dead_letter(job, "lease_expired")
                counts["dead_lettered"] += 1
            else:
                job["status"] = "queued"
                job["next_run_at"] = now
                counts["requeued"] += 1
        return counts

    # dead letters

    async def list_dead_letters(
        self,
        *,
        queue: str | None = None,
        include_replayed: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [
            self._dead_letter_view(row)
            for row in self.dead_letters.values()
            if (queue is None or row["queue"] == queue) and (include_replayed or row["replayed_at"] is None)
        ]
        return rows[offset : offset + limit]

    async def get_dead_letter(self, dead_letter_id: str) -> dict[str, Any]:
        row = self.dead_letters.get(dead_letter_id)
        if row is None:
            raise RepositoryNotFoundError("dead letter not found")
        return self._dead_letter_view(row)

    async def replay_dead_letter(self, dead_letter_id: str, *, actor_id: str) -> dict[str, Any]:
        row = self.dead_letters.get(dead_letter_id)
        if row is None:
            raise RepositoryNotFoundError("dead letter not found")
        job_id = self._insert_job(row["queue"], row["payload"])
        row["replayed_at"] = datetime.now(timezone.utc)
        row["replay_job_id"] = job_id
        self.events.append({"event_type": "replayed", "entity_id": job_id, "actor_id": actor_id})
        return {"dead_letter_id": dead_letter_id, "job_id": job_id, "queue": row["queue"]}

    # casting calls

    async def find_casting_call_id_by_hash(self, content_hash: str) -> str | None:
        for row in self.casting_calls.values():
            if row["content_hash"] == content_hash:
                return row["id"]
        return None

    async def insert_casting_call(self, **fields: Any) -> str:
        existing_id = await self.find_casting_call_id_by_hash(fields["content_hash"])
        if existing_id is not None:
            raise RepositoryDuplicateError(existing_id)
        now = datetime.now(timezone.utc)
        row = {
            "id": str(uuid.uuid4()),
            **fields,
            "status": "pending_review",
            "is_aggregated": True,
            "created_at": now,
            "updated_at": now,
        }
        self.casting_calls[row["id"]] = row
        return row["id"]

    async def get_casting_call(self, candidate_id: str) -> dict[str, Any]:
        row = self.casting_calls.get(candidate_id)
        if row is None:
            raise RepositoryNotFoundError("casting call not found")
        return dict(row)

    async def list_moderation_queue(self, *, limit: int, offset: int) -> dict[str, Any]:
        rows = [
            dict(row)
            for row in self.casting_calls.values()
            if row["status"] == "pending_review" and row["is_aggregated"]
        ]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return {"items": rows[offset : offset + limit], "total": len(rows)}

    async def set_casting_call_status(
        self,
        *,
        candidate_id: str,
        status: str,
        actor_id: str,
        reason: str | None,
    ) -> tuple[dict[str, Any], bool]:
        row = self.casting_calls.get(candidate_id)
        if row is None:
            raise RepositoryNotFoundError("casting call not found")
        from_status = row["status"]
        changed = self.policy._validate_status_transition(from_status=from_status, to_status=status)
        if changed:
            row["status"] = status
            row["updated_at"] = datetime.now(timezone.utc)
            self.events.append(
                {
                    "event_type": "status_changed",
                    "entity_id": candidate_id,
                    "actor_id": actor_id,
                    "payload": {"from_status": from_status, "to_status": status, "reason": reason},
                }
            )
        return dict(row), changed

    # health metrics

    async def count_jobs_by_queue_status(self) -> dict[str, dict[str, int]]:
        counts = {queue: {status: 0 for status in JOB_STATUSES} for queue in JOB_QUEUES}
        for job in self.jobs.values():
            counts[job["queue"]][job["status"]] += 1
        return counts

    async def count_pending_dead_letters(self) -> int:
        return sum(1 for row in self.dead_letters.values() if row["replayed_at"] is None)

    async def count_casting_calls_by_status(self) -> dict[str, int]:
        counts = {"pending_review": 0, "live": 0, "rejected": 0}
        for row in self.casting_calls.values():
            counts[row["status"]] += 1
        return counts

    async def count_processed_messages(self, *, since: datetime | None = None) -> int:
        return sum(1 for row in self.processed.values() if since is None or row["processed_at"] >= since)

    async def count_active_sources(self) -> int:
        return sum(1 for row in self.sources.values() if row["is_active"])

    async def latest_processed_at(self) -> datetime | None:
        stamps = [row["processed_at"] for row in self.processed.values()]
        return max(stamps) if stamps else None

    async def count_aggregated_casting_calls(self, *, since: datetime) -> int:
        return sum(1 for row in self.casting_calls.values() if row["is_aggregated"] and row["created_at"] >= since)

    # helpers

    def _insert_job(self, queue: str, payload_text: str) -> str:
        job_id = str(uuid.uuid4())
        self.jobs[job_id] = {
            "id": job_id,
            "queue": queue,
            "payload_text": payload_text,
            "status": "queued",
            "attempt": 0,
            "next_run_at": datetime.now(timezone.utc),
            "locked_by": None,
            "lease_expires_at": None,
            "result_json": None,
            "error_json": None,
        }
        return job_id

    def _insert_dead_letter(self, job: dict[str, Any], error: str) -> str:
        dead_letter_id = str(uuid.uuid4())
        self.dead_letters[dead_letter_id] = {
            "id": dead_letter_id,
            "job_id": job["id"],
            "queue": job["queue"],
            "payload": job["payload_text"],
            "error": error,
            "attempts": job["attempt"],
            "failed_at": datetime.now(timezone.utc),
            "replayed_at": None,
            "replay_job_id": None,
        }
        return dead_letter_id

    @staticmethod
    def _job_view(job: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": job["id"],
            "queue": job["queue"],
            "payload": json.loads(job["payload_text"]),
            "status": job["status"],
            "attempt": job["attempt"],
        }

    @staticmethod
    def _dead_letter_view(row: dict[str, Any]) -> dict[str, Any]:
        return {**row, "payload": json.loads(row["payload"]), "payload_text": row["payload"]}


@pytest.fixture
def memory_repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def api_client(memory_repository: InMemoryRepository) -> TestClient:
    os.environ["CP_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["CP_SUPABASE_ANON_KEY"] = "anon-key"
    os.environ["CP_MACHINE_API_KEY_HASHES"] = json.dumps(
        {MODULE_ID: hashlib.sha256(MODULE_KEY.encode("utf-8")).hexdigest()}
    )
    get_settings.cache_clear()
    app.dependency_overrides[get_repository] = lambda: memory_repository

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    for key in ("CP_SUPABASE_URL", "CP_SUPABASE_ANON_KEY", "CP_MACHINE_API_KEY_HASHES"):
        os.environ.pop(key, None)
    get_settings.cache_clear()


@pytest.fixture
def as_role(monkeypatch: pytest.MonkeyPatch) -> Callable[[str], None]:
    def _set(role: str, user_id: str = "00000000-0000-0000-0000-0000000000aa") -> None:
        async def _fake_fetch(**_: Any) -> dict[str, Any]:
            return {"id": user_id, "app_metadata": {"role": role}}

        monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)

    return _set
