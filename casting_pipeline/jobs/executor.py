from __future__ import annotations

from typing import Any

from casting_pipeline.jobs.extraction import execute_extraction
from casting_pipeline.jobs.moderation_intake import execute_moderation_intake
from casting_pipeline.services.classifier import TextClassifier
from casting_pipeline.services.dedupe import DeduplicationGuard


async def execute_job(
    job: dict[str, Any],
    *,
    classifier: TextClassifier,
    guard: DeduplicationGuard,
    classifier_timeout_seconds: float | None = None,
) -> dict[str, Any]:
    queue = job.get("queue")
    if queue == "extraction":
        timeout_seconds = classifier_timeout_seconds if classifier_timeout_seconds is not None else 30.0
        return await execute_extraction(job, classifier=classifier, timeout_seconds=timeout_seconds)
    if queue == "moderation_intake":
        return await execute_moderation_intake(job, guard=guard)

    raise ValueError(f"no handler for queue: {queue}")
