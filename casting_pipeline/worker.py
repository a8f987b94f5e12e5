from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
import time
from typing import Any

from opentelemetry import trace

from casting_pipeline.core.config import Settings, get_settings
from casting_pipeline.core.telemetry import (
    configure_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from casting_pipeline.jobs.executor import execute_job
from casting_pipeline.services.classifier import OpenAIChatClassifier, TextClassifier
from casting_pipeline.services.dedupe import DeduplicationGuard
from casting_pipeline.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    get_repository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


async def process_job(
    repository: Any,
    job: dict[str, Any],
    *,
    worker_id: str,
    settings: Settings,
    classifier: TextClassifier,
    guard: DeduplicationGuard,
) -> dict[str, Any] | None:
    """Claim, execute and settle one queued job.

    Returns the settled job, or ``None`` when another worker claimed it first.
    """
    try:
        claimed = await repository.claim_job(job["id"], worker_id, settings.claim_lease_seconds)
    except (RepositoryConflictError, RepositoryNotFoundError):
        logger.debug("job no longer claimable id=%s", job["id"])
        return None

    try:
        result = await execute_job(
            claimed,
            classifier=classifier,
            guard=guard,
            classifier_timeout_seconds=settings.classifier_timeout_seconds,
        )
    except Exception as exc:
        logger.exception(
            "job execution failed id=%s queue=%s attempt=%s",
            claimed["id"],
            claimed["queue"],
            claimed["attempt"],
        )
        return await repository.submit_job_result(
            claimed["id"],
            worker_id,
            "failed",
            None,
            {"error": str(exc) or type(exc).__name__, "type": type(exc).__name__},
        )

    logger.info(
        "job done id=%s queue=%s outcome=%s",
        claimed["id"],
        claimed["queue"],
        result.get("outcome"),
    )
    return await repository.submit_job_result(claimed["id"], worker_id, "done", result, None)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    repository = get_repository()
    worker_id = settings.worker_id or default_worker_id()
    classifier = OpenAIChatClassifier(
        base_url=settings.classifier_base_url,
        api_key=settings.classifier_api_key,
        model=settings.classifier_model,
        timeout_seconds=settings.classifier_timeout_seconds,
    )
    guard = DeduplicationGuard(repository)

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0
    logger.info("worker started worker_id=%s queues=%s", worker_id, settings.worker_queues)

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        reaped = await repository.requeue_expired_claimed_jobs(
                            worker_id,
                            settings.lease_reaper_batch_size,
                        )
                        if reaped["requeued"] or reaped["dead_lettered"]:
                            logger.info(
                                "expired leases requeued=%s dead_lettered=%s",
                                reaped["requeued"],
                                reaped["dead_lettered"],
                            )
                        last_reap_at = now

                    jobs = await repository.list_queued_jobs(
                        queues=settings.worker_queues,
                        limit=settings.worker_batch_size,
                    )
                    if not jobs:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    for job in jobs:
                        with tracer.start_as_current_span("worker.process_job") as job_span:
                            job_span.set_attribute("job.id", job["id"])
                            job_span.set_attribute("job.queue", job["queue"])
                            await process_job(
                                repository,
                                job,
                                worker_id=worker_id,
                                settings=settings,
                                classifier=classifier,
                                guard=guard,
                            )

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - infrastructure robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
