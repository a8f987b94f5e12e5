from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobQueue = Literal["extraction", "moderation_intake"]


class DeadLetterOut(BaseModel):
    id: str
    job_id: str
    queue: JobQueue
    payload: dict[str, Any] = Field(default_factory=dict)
    payload_text: str
    error: str
    attempts: int
    failed_at: datetime
    replayed_at: datetime | None = None
    replay_job_id: str | None = None


class DeadLetterReplayOut(BaseModel):
    dead_letter_id: str
    job_id: str
    queue: JobQueue
