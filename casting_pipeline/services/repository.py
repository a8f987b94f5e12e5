from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, AsyncIterator
from urllib.parse import urlparse

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from casting_pipeline.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class RepositoryDuplicateError(RepositoryConflictError):
    """Raised when a casting call with the same content hash already exists."""

    def __init__(self, existing_id: str) -> None:
        super().__init__(f"casting call already exists: {existing_id}")
        self.existing_id = existing_id


SOURCE_TYPES = {"WEB", "WHATSAPP"}
GROUP_CHAT_SUFFIX = "@g.us"
JOB_QUEUES = ("extraction", "moderation_intake")
JOB_STATUSES = ("queued", "claimed", "done", "dead_letter")
CASTING_CALL_STATUSES = ("pending_review", "live", "rejected")
ALLOWED_STATUS_TRANSITIONS = {
    "pending_review": {"live", "rejected"},
}
_CONNECTION_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.CannotConnectNowError,
    OSError,
)

_SOURCE_COLUMNS = """
  id::text as id,
  source_type::text as source_type,
  source_identifier,
  source_name,
  is_active,
  last_processed_at,
  created_at,
  updated_at
"""

_CASTING_CALL_COLUMNS = """
  id::text as id,
  title,
  description,
  company,
  location,
  compensation,
  requirements,
  deadline,
  contact_info,
  source_url,
  source_id::text as source_id,
  content_hash,
  status::text as status,
  is_aggregated,
  created_at,
  updated_at
"""

_JOB_COLUMNS = """
  id::text as id,
  queue::text as queue,
  payload::text as payload,
  status::text as status,
  attempt
"""

_DEAD_LETTER_COLUMNS = """
  id::text as id,
  job_id::text as job_id,
  queue::text as queue,
  payload::text as payload,
  error,
  attempts,
  failed_at,
  replayed_at,
  replay_job_id::text as replay_job_id
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # -- source registry --------------------------------------------------

    async def create_source(
        self,
        *,
        source_type: str,
        source_identifier: str,
        source_name: str,
        is_active: bool = True,
    ) -> dict[str, Any]:
        normalized_type = self._coerce_text(source_type)
        if normalized_type not in SOURCE_TYPES:
            raise RepositoryValidationError("source_type must be one of: WEB, WHATSAPP")
        normalized_identifier = self._validate_source_identifier(normalized_type, source_identifier)
        normalized_name = self._coerce_text(source_name)
        if not normalized_name:
            raise RepositoryValidationError("source_name must be a non-empty string")

        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    insert into ingestion_sources (source_type, source_identifier, source_name, is_active)
                    values ($1::source_type, $2, $3, $4)
                    returning {_SOURCE_COLUMNS}
                    """,
                    normalized_type,
                    normalized_identifier,
                    normalized_name,
                    bool(is_active),
                )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("source_identifier is already registered") from exc
        return self._source_row_to_dict(row)

    async def get_source(self, source_id: str) -> dict[str, Any]:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    f"select {_SOURCE_COLUMNS} from ingestion_sources where id = $1::uuid",
                    source_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        if not row:
            raise RepositoryNotFoundError("source not found")
        return self._source_row_to_dict(row)

    async def list_sources(
        self,
        *,
        source_type: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if source_type is not None and source_type not in SOURCE_TYPES:
            raise RepositoryValidationError("source_type must be one of: WEB, WHATSAPP")
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                select {_SOURCE_COLUMNS}
                from ingestion_sources
                where ($1::source_type is null or source_type = $1::source_type)
                  and ($2::boolean is null or is_active = $2::boolean)
                order by created_at desc
                limit $3 offset $4
                """,
                source_type,
                is_active,
                max(1, min(limit, 500)),
                max(0, offset),
            )
        return [self._source_row_to_dict(row) for row in rows]

    async def update_source(
        self,
        source_id: str,
        *,
        source_type: str | None = None,
        source_identifier: str | None = None,
        source_name: str | None = None,
        is_active: bool | None = None,
    ) -> dict[str, Any]:
        try:
            async with self._acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        """
                        select source_type::text as source_type
                        from ingestion_sources
                        where id = $1::uuid
                        for update
                        """,
                        source_id,
                    )
                    if not current:
                        raise RepositoryNotFoundError("source not found")
                    if source_type is not None and source_type != current["source_type"]:
                        raise RepositoryValidationError("source_type is immutable after creation")

                    normalized_identifier = None
                    if source_identifier is not None:
                        normalized_identifier = self._validate_source_identifier(
                            current["source_type"],
                            source_identifier,
                        )
                    normalized_name = None
                    if source_name is not None:
                        normalized_name = self._coerce_text(source_name)
                        if not normalized_name:
                            raise RepositoryValidationError("source_name must be a non-empty string")

                    row = await conn.fetchrow(
                        f"""
                        update ingestion_sources
                        set
                          source_identifier = coalesce($2, source_identifier),
                          source_name = coalesce($3, source_name),
                          is_active = coalesce($4::boolean, is_active)
                        where id = $1::uuid
                        returning {_SOURCE_COLUMNS}
                        """,
                        source_id,
                        normalized_identifier,
                        normalized_name,
                        is_active,
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("source_identifier is already registered") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        return self._source_row_to_dict(row)

    async def deactivate_source(self, source_id: str) -> dict[str, Any]:
        return await self.update_source(source_id, is_active=False)

    async def find_active_source(self, *, source_type: str, source_identifier: str) -> dict[str, Any] | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                select {_SOURCE_COLUMNS}
                from ingestion_sources
                where source_type = $1::source_type
                  and source_identifier = $2
                  and is_active = true
                """,
                source_type,
                source_identifier,
            )
        return self._source_row_to_dict(row) if row else None

    # -- intake ledger ----------------------------------------------------

    async def has_processed_message(self, *, source_type: str, external_message_id: str) -> bool:
        async with self._acquire() as conn:
            exists = await conn.fetchval(
                """
                select 1
                from processed_messages
                where source_type = $1::source_type and external_message_id = $2
                """,
                source_type,
                external_message_id,
            )
        return bool(exists)

    async def record_message_and_enqueue_extraction(
        self,
        *,
        source_id: str,
        source_type: str,
        external_message_id: str,
        payload: dict[str, Any],
    ) -> str | None:
        """Write the idempotency ledger row and the extraction job atomically.

        Returns the new job id, or ``None`` when another delivery of the same
        message won the race on the ledger's unique constraint.
        """
        async with self._acquire() as conn:
            async with conn.transaction():
                ledger_id = await conn.fetchval(
                    """
                    insert into processed_messages (external_message_id, source_type, source_id)
                    values ($1, $2::source_type, $3::uuid)
                    on conflict (source_type, external_message_id) do nothing
                    returning id::text
                    """,
                    external_message_id,
                    source_type,
                    source_id,
                )
                if ledger_id is None:
                    return None

                job_id = await self._insert_job(conn, queue="extraction", payload_text=json.dumps(payload))
                await conn.execute(
                    "update ingestion_sources set last_processed_at = now() where id = $1::uuid",
                    source_id,
                )
                await self._record_event(
                    conn=conn,
                    entity_type="job",
                    entity_id=job_id,
                    event_type="enqueued",
                    actor_type="system",
                    actor_id=None,
                    payload={
                        "queue": "extraction",
                        "source_id": source_id,
                        "external_message_id": external_message_id,
                    },
                )
                return job_id

    # -- job queue --------------------------------------------------------

    async def enqueue_job(self, *, queue: str, payload: dict[str, Any]) -> str:
        if queue not in JOB_QUEUES:
            raise RepositoryValidationError(f"unknown queue: {queue}")
        async with self._acquire() as conn:
            async with conn.transaction():
                job_id = await self._insert_job(conn, queue=queue, payload_text=json.dumps(payload))
                await self._record_event(
                    conn=conn,
                    entity_type="job",
                    entity_id=job_id,
                    event_type="enqueued",
                    actor_type="system",
                    actor_id=None,
                    payload={"queue": queue},
                )
                return job_id

    async def list_queued_jobs(self, *, queues: list[str], limit: int) -> list[dict[str, Any]]:
        unknown = set(queues) - set(JOB_QUEUES)
        if unknown:
            raise RepositoryValidationError(f"unknown queues: {sorted(unknown)}")
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                select {_JOB_COLUMNS}
                from jobs
                where status = 'queued'
                  and next_run_at <= now()
                  and queue = any($1::job_queue[])
                order by next_run_at asc, created_at asc
                limit $2
                """,
                list(queues),
                max(1, limit),
            )
        return [self._job_row_to_dict(row) for row in rows]

    async def claim_job(self, job_id: str, worker_id: str, lease_seconds: int) -> dict[str, Any]:
        try:
            async with self._acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = 'claimed',
                          locked_by = $2,
                          locked_at = now(),
                          lease_expires_at = now() + ($3::int * interval '1 second'),
                          attempt = attempt + 1
                        where id = $1::uuid and status = 'queued' and next_run_at <= now()
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        worker_id,
                        lease_seconds,
                    )

                    if not row:
                        exists = await conn.fetchval("select 1 from jobs where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("job not found")
                        raise RepositoryConflictError("job is not claimable")

                    await self._record_event(
                        conn=conn,
                        entity_type="job",
                        entity_id=row["id"],
                        event_type="claimed",
                        actor_type="worker",
                        actor_id=worker_id,
                        payload={"lease_seconds": lease_seconds, "attempt": int(row["attempt"])},
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def submit_job_result(
        self,
        job_id: str,
        worker_id: str,
        status: str,
        result_json: dict[str, Any] | None,
        error_json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if status not in {"done", "failed"}:
            raise RepositoryValidationError("status must be one of: done, failed")

        try:
            async with self._acquire() as conn:
                async with conn.transaction():
                    claimed = await conn.fetchrow(
                        """
                        select
                          id::text as id,
                          queue::text as queue,
                          status::text as status,
                          locked_by,
                          attempt
                        from jobs
                        where id = $1::uuid
                        for update
                        """,
                        job_id,
                    )

                    if not claimed:
                        raise RepositoryNotFoundError("job not found")
                    if claimed["status"] != "claimed":
                        raise RepositoryConflictError("job is not in claimed state")
                    if claimed["locked_by"] != worker_id:
                        raise RepositoryForbiddenError("job claimed by another worker")

                    attempt = int(claimed["attempt"])
                    resolved_status = "done"
                    retry_delay_seconds: int | None = None
                    if status == "failed":
                        resolved_status, retry_delay_seconds = self._resolve_failed_attempt(attempt=attempt)

                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = $2::job_status,
                          result_json = $3::jsonb,
                          error_json = $4::jsonb,
                          locked_by = null,
                          locked_at = null,
                          lease_expires_at = null,
                          next_run_at = case
                            when $5::int is null then next_run_at
                            else now() + ($5::int * interval '1 second')
                          end
                        where id = $1::uuid
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        resolved_status,
                        json.dumps(result_json) if result_json is not None else None,
                        json.dumps(error_json) if error_json is not None else None,
                        retry_delay_seconds,
                    )
                    job = self._job_row_to_dict(row)

                    if resolved_status == "done" and job["queue"] == "extraction":
                        job["follow_up_job_id"] = await self._forward_extraction_result(
                            conn=conn,
                            job_id=job["id"],
                            result_json=result_json,
                        )
                    if resolved_status == "dead_letter":
                        job["dead_letter_id"] = await self._insert_dead_letter(
                            conn=conn,
                            job_id=job["id"],
                            error=self._error_message(error_json),
                            attempts=attempt,
                        )

                    await self._record_event(
                        conn=conn,
                        entity_type="job",
                        entity_id=job["id"],
                        event_type="result_submitted",
                        actor_type="worker",
                        actor_id=worker_id,
                        payload={
                            "requested_status": status,
                            "resolved_status": resolved_status,
                            "attempt": attempt,
                            "max_attempts": self.job_max_attempts,
                            "retry_delay_seconds": retry_delay_seconds,
                            "outcome": (result_json or {}).get("outcome"),
                        },
                    )
                    return job
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def requeue_expired_claimed_jobs(self, worker_id: str, limit: int) -> dict[str, int]:
        bounded_limit = max(1, min(limit, 1000))

        async with self._acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id, attempt
                      from jobs
                      where status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = case
                        when e.attempt >= $2 then 'dead_letter'::job_status
                        else 'queued'::job_status
                      end,
                      error_json = case
                        when e.attempt >= $2 then jsonb_build_object('error', 'lease_expired')
                        else j.error_json
                      end,
                      locked_by = null,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id, j.status::text as status, j.attempt
                    """,
                    bounded_limit,
                    self.job_max_attempts,
                )

                counts = {"requeued": 0, "dead_lettered": 0}
                for row in rows:
                    if row["status"] == "dead_letter":
                        await self._insert_dead_letter(
                            conn=conn,
                            job_id=row["id"],
                            error="lease_expired",
                            attempts=int(row["attempt"]),
                        )
                        counts["dead_lettered"] += 1
                        event_type = "lease_dead_lettered"
                    else:
                        counts["requeued"] += 1
                        event_type = "lease_requeued"
                    await self._record_event(
                        conn=conn,
                        entity_type="job",
                        entity_id=row["id"],
                        event_type=event_type,
                        actor_type="worker",
                        actor_id=worker_id,
                        payload={"reason": "lease_expired", "attempt": int(row["attempt"])},
                    )
                return counts

    # -- dead letters -----------------------------------------------------

    async def list_dead_letters(
        self,
        *,
        queue: str | None = None,
        include_replayed: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if queue is not None and queue not in JOB_QUEUES:
            raise RepositoryValidationError(f"unknown queue: {queue}")
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                select {_DEAD_LETTER_COLUMNS}
                from dead_letter_jobs
                where ($1::job_queue is null or queue = $1::job_queue)
                  and ($2::boolean or replayed_at is null)
                order by failed_at desc
                limit $3 offset $4
                """,
                queue,
                include_replayed,
                max(1, min(limit, 500)),
                max(0, offset),
            )
        return [self._dead_letter_row_to_dict(row) for row in rows]

    async def get_dead_letter(self, dead_letter_id: str) -> dict[str, Any]:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    f"select {_DEAD_LETTER_COLUMNS} from dead_letter_jobs where id = $1::uuid",
                    dead_letter_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("dead letter not found") from exc
        if not row:
            raise RepositoryNotFoundError("dead letter not found")
        return self._dead_letter_row_to_dict(row)

    async def replay_dead_letter(self, dead_letter_id: str, *, actor_id: str) -> dict[str, Any]:
        try:
            async with self._acquire() as conn:
                async with conn.transaction():
                    dead_letter = await conn.fetchrow(
                        """
                        select id::text as id, job_id::text as job_id
                        from dead_letter_jobs
                        where id = $1::uuid
                        for update
                        """,
                        dead_letter_id,
                    )
                    if not dead_letter:
                        raise RepositoryNotFoundError("dead letter not found")

                    replayed = await conn.fetchrow(
                        """
                        insert into jobs (queue, payload)
                        select queue, payload
                        from dead_letter_jobs
                        where id = $1::uuid
                        returning id::text as id, queue::text as queue
                        """,
                        dead_letter_id,
                    )
                    await conn.execute(
                        """
                        update dead_letter_jobs
                        set replayed_at = now(), replay_job_id = $2::uuid
                        where id = $1::uuid
                        """,
                        dead_letter_id,
                        replayed["id"],
                    )
                    await self._record_event(
                        conn=conn,
                        entity_type="job",
                        entity_id=replayed["id"],
                        event_type="replayed",
                        actor_type="human",
                        actor_id=actor_id,
                        payload={
                            "dead_letter_id": dead_letter["id"],
                            "original_job_id": dead_letter["job_id"],
                        },
                    )
                    return {
                        "dead_letter_id": dead_letter["id"],
                        "job_id": replayed["id"],
                        "queue": replayed["queue"],
                    }
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("dead letter not found") from exc

    # -- casting calls ----------------------------------------------------

    async def find_casting_call_id_by_hash(self, content_hash: str) -> str | None:
        async with self._acquire() as conn:
            return await conn.fetchval(
                "select id::text from casting_calls where content_hash = $1",
                content_hash,
            )

    async def insert_casting_call(
        self,
        *,
        title: str,
        description: str | None,
        company: str | None,
        location: str | None,
        compensation: str | None,
        requirements: str | None,
        deadline: datetime | None,
        contact_info: str | None,
        source_url: str | None,
        source_id: str | None,
        content_hash: str,
    ) -> str:
        async with self._acquire() as conn:
            async with conn.transaction():
                created_id = await conn.fetchval(
                    """
                    insert into casting_calls (
                      title,
                      description,
                      company,
                      location,
                      compensation,
                      requirements,
                      deadline,
                      contact_info,
                      source_url,
                      source_id,
                      content_hash,
                      status,
                      is_aggregated
                    )
                    values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::uuid, $11, 'pending_review', true)
                    on conflict (content_hash) do nothing
                    returning id::text
                    """,
                    title,
                    description,
                    company,
                    location,
                    compensation,
                    requirements,
                    deadline,
                    contact_info,
                    source_url,
                    source_id,
                    content_hash,
                )
                if created_id is None:
                    existing_id = await conn.fetchval(
                        "select id::text from casting_calls where content_hash = $1",
                        content_hash,
                    )
                    if existing_id is None:
                        raise RepositoryConflictError("failed to resolve existing casting call after conflict")
                    raise RepositoryDuplicateError(existing_id)

                await self._record_event(
                    conn=conn,
                    entity_type="casting_call",
                    entity_id=created_id,
                    event_type="created",
                    actor_type="system",
                    actor_id=None,
                    payload={"content_hash": content_hash, "source_url": source_url},
                )
                return created_id

    async def get_casting_call(self, candidate_id: str) -> dict[str, Any]:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    f"select {_CASTING_CALL_COLUMNS} from casting_calls where id = $1::uuid",
                    candidate_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("casting call not found") from exc
        if not row:
            raise RepositoryNotFoundError("casting call not found")
        return self._casting_call_row_to_dict(row)

    async def list_moderation_queue(self, *, limit: int, offset: int) -> dict[str, Any]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                select {_CASTING_CALL_COLUMNS}
                from casting_calls
                where status = 'pending_review' and is_aggregated = true
                order by created_at desc
                limit $1 offset $2
                """,
                limit,
                offset,
            )
            total = await conn.fetchval(
                """
                select count(*)
                from casting_calls
                where status = 'pending_review' and is_aggregated = true
                """
            )
        return {"items": [self._casting_call_row_to_dict(row) for row in rows], "total": int(total or 0)}

    async def set_casting_call_status(
        self,
        *,
        candidate_id: str,
        status: str,
        actor_id: str,
        reason: str | None,
    ) -> tuple[dict[str, Any], bool]:
        try:
            async with self._acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        """
                        select status::text as status
                        from casting_calls
                        where id = $1::uuid
                        for update
                        """,
                        candidate_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("casting call not found")

                    from_status = str(existing["status"])
                    changed = self._validate_status_transition(from_status=from_status, to_status=status)
                    if changed:
                        await conn.execute(
                            "update casting_calls set status = $2::casting_call_status where id = $1::uuid",
                            candidate_id,
                            status,
                        )
                        await self._record_event(
                            conn=conn,
                            entity_type="casting_call",
                            entity_id=candidate_id,
                            event_type="status_changed",
                            actor_type="human",
                            actor_id=actor_id,
                            payload={"from_status": from_status, "to_status": status, "reason": reason},
                        )

                    row = await conn.fetchrow(
                        f"select {_CASTING_CALL_COLUMNS} from casting_calls where id = $1::uuid",
                        candidate_id,
                    )
                    return self._casting_call_row_to_dict(row), changed
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("casting call not found") from exc

    # -- health metrics ---------------------------------------------------

    async def count_jobs_by_queue_status(self) -> dict[str, dict[str, int]]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                select queue::text as queue, status::text as status, count(*) as total
                from jobs
                group by queue, status
                """
            )
        counts: dict[str, dict[str, int]] = {queue: {status: 0 for status in JOB_STATUSES} for queue in JOB_QUEUES}
        for row in rows:
            counts.setdefault(row["queue"], {})[row["status"]] = int(row["total"])
        return counts

    async def count_pending_dead_letters(self) -> int:
        async with self._acquire() as conn:
            total = await conn.fetchval("select count(*) from dead_letter_jobs where replayed_at is null")
        return int(total or 0)

    async def count_casting_calls_by_status(self) -> dict[str, int]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                "select status::text as status, count(*) as total from casting_calls group by status"
            )
        counts = {status: 0 for status in CASTING_CALL_STATUSES}
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    async def count_processed_messages(self, *, since: datetime | None = None) -> int:
        async with self._acquire() as conn:
            total = await conn.fetchval(
                """
                select count(*)
                from processed_messages
                where ($1::timestamptz is null or processed_at >= $1::timestamptz)
                """,
                since,
            )
        return int(total or 0)

    async def count_active_sources(self) -> int:
        async with self._acquire() as conn:
            total = await conn.fetchval("select count(*) from ingestion_sources where is_active = true")
        return int(total or 0)

    async def latest_processed_at(self) -> datetime | None:
        async with self._acquire() as conn:
            return await conn.fetchval("select max(processed_at) from processed_messages")

    async def count_aggregated_casting_calls(self, *, since: datetime) -> int:
        async with self._acquire() as conn:
            total = await conn.fetchval(
                """
                select count(*)
                from casting_calls
                where is_aggregated = true and created_at >= $1::timestamptz
                """,
                since,
            )
        return int(total or 0)

    # -- internals --------------------------------------------------------

    async def _forward_extraction_result(
        self,
        *,
        conn: asyncpg.Connection,
        job_id: str,
        result_json: dict[str, Any] | None,
    ) -> str | None:
        payload = result_json if isinstance(result_json, dict) else {}
        candidate = payload.get("candidate")
        if payload.get("outcome") != "extracted" or not isinstance(candidate, dict):
            return None

        follow_up_id = await self._insert_job(conn, queue="moderation_intake", payload_text=json.dumps(candidate))
        await self._record_event(
            conn=conn,
            entity_type="job",
            entity_id=follow_up_id,
            event_type="enqueued",
            actor_type="system",
            actor_id=None,
            payload={"queue": "moderation_intake", "parent_job_id": job_id},
        )
        return follow_up_id

    @staticmethod
    async def _insert_job(conn: asyncpg.Connection, *, queue: str, payload_text: str) -> str:
        return await conn.fetchval(
            """
            insert into jobs (queue, payload)
            values ($1::job_queue, $2::json)
            returning id::text
            """,
            queue,
            payload_text,
        )

    async def _insert_dead_letter(
        self,
        *,
        conn: asyncpg.Connection,
        job_id: str,
        error: str,
        attempts: int,
    ) -> str:
        dead_letter_id = await conn.fetchval(
            """
            insert into dead_letter_jobs (job_id, queue, payload, error, attempts)
            select id, queue, payload, $2, $3
            from jobs
            where id = $1::uuid
            returning id::text
            """,
            job_id,
            error,
            attempts,
        )
        await self._record_event(
            conn=conn,
            entity_type="job",
            entity_id=job_id,
            event_type="dead_lettered",
            actor_type="system",
            actor_id=None,
            payload={"dead_letter_id": dead_letter_id, "error": error, "attempts": attempts},
        )
        return dead_letter_id

    @staticmethod
    async def _record_event(
        *,
        conn: asyncpg.Connection,
        entity_type: str,
        entity_id: str | None,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into pipeline_events (
              entity_type,
              entity_id,
              event_type,
              actor_type,
              actor_id,
              payload
            )
            values ($1, $2::uuid, $3, $4, $5, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_type,
            actor_id,
            json.dumps(payload),
        )

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except _CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CP_DATABASE_URL is required")

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

    def _resolve_failed_attempt(self, *, attempt: int) -> tuple[str, int | None]:
        if attempt >= self.job_max_attempts:
            return "dead_letter", None
        return "queued", self._compute_retry_delay_seconds(attempt=attempt)

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.job_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.job_retry_base_seconds * (2**multiplier)
        return min(delay, self.job_retry_max_seconds)

    @staticmethod
    def _validate_status_transition(*, from_status: str, to_status: str) -> bool:
        if to_status == from_status:
            return False
        allowed = ALLOWED_STATUS_TRANSITIONS.get(from_status)
        if not allowed or to_status not in allowed:
            raise RepositoryConflictError(f"invalid status transition: {from_status} -> {to_status}")
        return True

    @classmethod
    def _validate_source_identifier(cls, source_type: str, source_identifier: Any) -> str:
        identifier = cls._coerce_text(source_identifier)
        if not identifier:
            raise RepositoryValidationError("source_identifier must be a non-empty string")
        if source_type == "WEB":
            parsed = urlparse(identifier)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise RepositoryValidationError("source_identifier must be a valid URL for WEB sources")
        elif source_type == "WHATSAPP" and not identifier.endswith(GROUP_CHAT_SUFFIX):
            raise RepositoryValidationError(
                f"source_identifier must be a group chat id ending in {GROUP_CHAT_SUFFIX} for WHATSAPP sources",
            )
        return identifier

    @staticmethod
    def _error_message(error_json: dict[str, Any] | None) -> str:
        if isinstance(error_json, dict):
            message = error_json.get("error")
            if isinstance(message, str) and message:
                return message
            return json.dumps(error_json)
        return "unknown error"

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _decode_payload(raw: Any) -> dict[str, Any]:
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                return {}
        return raw if isinstance(raw, dict) else {}

    @staticmethod
    def _source_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "source_type": row["source_type"],
            "source_identifier": row["source_identifier"],
            "source_name": row["source_name"],
            "is_active": bool(row["is_active"]),
            "last_processed_at": row["last_processed_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _casting_call_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "title": row["title"],
            "description": row["description"],
            "company": row["company"],
            "location": row["location"],
            "compensation": row["compensation"],
            "requirements": row["requirements"],
            "deadline": row["deadline"],
            "contact_info": row["contact_info"],
            "source_url": row["source_url"],
            "source_id": row["source_id"],
            "content_hash": row["content_hash"],
            "status": row["status"],
            "is_aggregated": bool(row["is_aggregated"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @classmethod
    def _job_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "queue": row["queue"],
            "payload": cls._decode_payload(row["payload"]),
            "status": row["status"],
            "attempt": int(row["attempt"]),
        }

    @classmethod
    def _dead_letter_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "job_id": row["job_id"],
            "queue": row["queue"],
            "payload": cls._decode_payload(row["payload"]),
            "payload_text": row["payload"],
            "error": row["error"],
            "attempts": int(row["attempts"]),
            "failed_at": row["failed_at"],
            "replayed_at": row["replayed_at"],
            "replay_job_id": row["replay_job_id"],
        }


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
    )
