from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

CastingCallStatus = Literal["pending_review", "live", "rejected"]


class CastingCallOut(BaseModel):
    id: str
    title: str
    description: str | None = None
    company: str | None = None
    location: str | None = None
    compensation: str | None = None
    requirements: str | None = None
    deadline: datetime | None = None
    contact_info: str | None = None
    source_url: str | None = None
    source_id: str | None = None
    content_hash: str
    status: CastingCallStatus
    is_aggregated: bool
    created_at: datetime
    updated_at: datetime


class ModerationQueueOut(BaseModel):
    items: list[CastingCallOut] = Field(default_factory=list)
    total: int
    limit: int
    offset: int


class ModerationDecisionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class ModerationDecisionOut(BaseModel):
    candidate: CastingCallOut
    changed: bool
