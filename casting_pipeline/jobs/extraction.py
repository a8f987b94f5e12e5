from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

from casting_pipeline.services.classifier import ClassifierUnavailableError, TextClassifier

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def execute_extraction(
    job: dict[str, Any],
    *,
    classifier: TextClassifier,
    timeout_seconds: float,
) -> dict[str, Any]:
    """Classify the queued text and, when affirmative, extract its fields.

    Content outcomes are returned; collaborator faults raise so the queue
    retries the job.
    """
    payload = _payload(job)
    text = payload.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValueError("extraction payload is missing text")

    is_casting_call = await _bounded(classifier.classify(text), timeout_seconds, "classify")
    if not is_casting_call:
        return {"outcome": "not_casting_call", "external_message_id": payload.get("external_message_id")}

    fields = await _bounded(classifier.extract(text), timeout_seconds, "extract")
    if fields is None:
        return {"outcome": "extraction_failed", "external_message_id": payload.get("external_message_id")}

    candidate = fields.model_dump()
    candidate.update(
        {
            "source_url": payload.get("source_url"),
            "source_id": payload.get("source_id"),
            "source_name": payload.get("source_name"),
            "external_message_id": payload.get("external_message_id"),
        }
    )
    logger.info(
        "extracted casting call external_message_id=%s title=%r",
        payload.get("external_message_id"),
        fields.title,
    )
    return {"outcome": "extracted", "candidate": candidate}


async def _bounded(call: Awaitable[T], timeout_seconds: float, operation: str) -> T:
    try:
        return await asyncio.wait_for(call, timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise ClassifierUnavailableError(f"classifier {operation} timed out after {timeout_seconds}s") from exc


def _payload(job: dict[str, Any]) -> dict[str, Any]:
    raw = job.get("payload")
    return raw if isinstance(raw, dict) else {}
