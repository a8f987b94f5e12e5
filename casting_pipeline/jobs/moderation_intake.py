from __future__ import annotations

from typing import Any

from casting_pipeline.services.classifier import ExtractedFields
from casting_pipeline.services.dedupe import DeduplicationGuard


async def execute_moderation_intake(job: dict[str, Any], *, guard: DeduplicationGuard) -> dict[str, Any]:
    raw = job.get("payload")
    payload: dict[str, Any] = raw if isinstance(raw, dict) else {}
    # A malformed candidate raises ValidationError and ends up dead-lettered.
    fields = ExtractedFields.model_validate(payload)

    result = await guard.admit(
        fields,
        source_url=_as_text(payload.get("source_url")),
        source_id=_as_text(payload.get("source_id")),
    )
    return {
        "outcome": result.outcome,
        "casting_call_id": result.casting_call_id,
        "content_hash": result.content_hash,
    }


def _as_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
