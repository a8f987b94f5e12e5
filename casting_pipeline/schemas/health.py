from datetime import datetime

from pydantic import BaseModel, Field


class QueueCountsOut(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class DatabaseMetricsOut(BaseModel):
    pending_calls: int = 0
    live_calls: int = 0
    processed_messages: int = 0
    active_sources: int = 0


class ProcessingMetricsOut(BaseModel):
    last_processed_at: datetime | None = None
    window_hours: float
    window_processed_messages: int = 0
    window_created_calls: int = 0
    success_rate: float | None = None


class PipelineHealthOut(BaseModel):
    healthy: bool
    checked_at: datetime
    queues: dict[str, QueueCountsOut] = Field(default_factory=dict)
    dead_letters: int = 0
    database: DatabaseMetricsOut
    processing: ProcessingMetricsOut
    issues: list[str] = Field(default_factory=list)
    failed_checks: list[str] = Field(default_factory=list)
