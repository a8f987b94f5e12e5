from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from casting_pipeline.schemas.intake import ChatWebhookEnvelope
from casting_pipeline.services.classifier import ExtractedFields
from casting_pipeline.services.dedupe import DeduplicationGuard
from casting_pipeline.services.intake import IntakeFilter, SkipReason
from casting_pipeline.services.repository import (
    PostgresRepository,
    RepositoryConflictError,
    RepositoryDuplicateError,
    RepositoryNotFoundError,
)

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "casting_pipeline" / "db" / "schema.sql"
T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("CP_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require CP_DATABASE_URL")
    return url


async def _reset_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        await conn.execute(
            """
            truncate table pipeline_events, dead_letter_jobs, jobs, casting_calls,
              processed_messages, ingestion_sources restart identity cascade
            """
        )
    finally:
        await conn.close()


async def _scalar(database_url: str, query: str, *args: Any) -> Any:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(query, *args)
    finally:
        await conn.close()


@pytest.fixture
def repository(database_url: str) -> PostgresRepository:
    _run(_reset_schema(database_url))
    return PostgresRepository(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=2,
        job_max_attempts=2,
        job_retry_base_seconds=0,
        job_retry_max_seconds=0,
    )


def _envelope(message_id: str, timestamp: int) -> ChatWebhookEnvelope:
    return ChatWebhookEnvelope.model_validate(
        {
            "event": "messages.upsert",
            "data": {
                "id": message_id,
                "chatId": "120363X@g.us",
                "timestamp": timestamp,
                "text": {"body": "Casting call: two actors for a bank commercial in Riyadh, paid."},
            },
        }
    )


def test_intake_is_idempotent_at_the_storage_layer(repository: PostgresRepository, database_url: str) -> None:
    async def scenario() -> tuple[Any, Any]:
        try:
            await repository.create_source(
                source_type="WHATSAPP",
                source_identifier="120363X@g.us",
                source_name="Riyadh",
            )
            with pytest.raises(RepositoryConflictError):
                await repository.create_source(
                    source_type="WHATSAPP",
                    source_identifier="120363X@g.us",
                    source_name="Again",
                )

            intake = IntakeFilter(repository, recency_window_hours=24, min_text_length=30)
            envelope = _envelope("wamid-1", int(time.time()))
            return await intake.accept_chat_event(envelope), await intake.accept_chat_event(envelope)
        finally:
            await repository.close()

    first, second = _run(scenario())

    assert first.queued is True
    assert second.skipped is SkipReason.ALREADY_PROCESSED
    assert _run(_scalar(database_url, "select count(*) from jobs")) == 1
    assert _run(_scalar(database_url, "select count(*) from processed_messages")) == 1
    assert _run(_scalar(database_url, "select last_processed_at is not null from ingestion_sources")) is True


def test_failed_job_is_dead_lettered_verbatim_and_replayable(repository: PostgresRepository, database_url: str) -> None:
    async def scenario() -> dict[str, Any]:
        try:
            job_id = await repository.enqueue_job(queue="extraction", payload={"text": "x", "n": 1})
            for _ in range(2):
                claimed = await repository.claim_job(job_id, "worker-a", 60)
                with pytest.raises(RepositoryConflictError):
                    await repository.claim_job(job_id, "worker-b", 60)
                settled = await repository.submit_job_result(
                    claimed["id"],
                    "worker-a",
                    "failed",
                    None,
                    {"error": "upstream 503"},
                )
            assert settled["status"] == "dead_letter"

            (dead_letter,) = await repository.list_dead_letters()
            replay = await repository.replay_dead_letter(dead_letter["id"], actor_id="admin-1")
            with pytest.raises(RepositoryNotFoundError):
                await repository.replay_dead_letter("not-a-uuid", actor_id="admin-1")
            return {"dead_letter": dead_letter, "replay": replay, "original": job_id}
        finally:
            await repository.close()

    outcome = _run(scenario())
    dead_letter = outcome["dead_letter"]
    assert dead_letter["job_id"] == outcome["original"]
    assert dead_letter["payload_text"] == '{"text": "x", "n": 1}'
    assert dead_letter["error"] == "upstream 503"
    assert dead_letter["attempts"] == 2

    replayed_payload = _run(
        _scalar(database_url, "select payload::text from jobs where id = $1::uuid", outcome["replay"]["job_id"])
    )
    assert replayed_payload == dead_letter["payload_text"]


def test_extraction_result_forwards_candidate_and_dedupes(repository: PostgresRepository) -> None:
    async def scenario() -> tuple[dict[str, Any], Any, Any]:
        try:
            job_id = await repository.enqueue_job(queue="extraction", payload={"text": "casting"})
            await repository.claim_job(job_id, "worker-a", 60)
            settled = await repository.submit_job_result(
                job_id,
                "worker-a",
                "done",
                {"outcome": "extracted", "candidate": {"title": "Lead", "location": "Doha"}},
                None,
            )

            guard = DeduplicationGuard(repository)
            fields = ExtractedFields(title="Lead", location="Doha")
            created = await guard.admit(fields, source_url=None, source_id=None)
            duplicate = await guard.admit(fields, source_url=None, source_id=None)

            with pytest.raises(RepositoryDuplicateError):
                await repository.insert_casting_call(
                    title="Lead",
                    description=None,
                    company=None,
                    location="Doha",
                    compensation=None,
                    requirements=None,
                    deadline=None,
                    contact_info=None,
                    source_url=None,
                    source_id=None,
                    content_hash=created.content_hash,
                )

            row, changed = await repository.set_casting_call_status(
                candidate_id=created.casting_call_id,
                status="live",
                actor_id="mod-1",
                reason=None,
            )
            _, repeated = await repository.set_casting_call_status(
                candidate_id=created.casting_call_id,
                status="live",
                actor_id="mod-1",
                reason=None,
            )
            with pytest.raises(RepositoryConflictError):
                await repository.set_casting_call_status(
                    candidate_id=created.casting_call_id,
                    status="rejected",
                    actor_id="mod-1",
                    reason=None,
                )
            assert row["status"] == "live"
            assert changed is True
            assert repeated is False
            return settled, created, duplicate
        finally:
            await repository.close()

    settled, created, duplicate = _run(scenario())
    assert settled["follow_up_job_id"] is not None
    assert created.outcome == "created"
    assert duplicate.outcome == "duplicate"
    assert duplicate.casting_call_id == created.casting_call_id
