from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SourceType(str, Enum):
    WEB = "WEB"
    WHATSAPP = "WHATSAPP"


class SourceCreateRequest(BaseModel):
    source_type: SourceType
    source_identifier: str = Field(min_length=1, max_length=2048)
    source_name: str = Field(min_length=1, max_length=255)
    is_active: bool = True


class SourcePatchRequest(BaseModel):
    source_type: SourceType | None = None
    source_identifier: str | None = Field(default=None, min_length=1, max_length=2048)
    source_name: str | None = Field(default=None, min_length=1, max_length=255)
    is_active: bool | None = None


class SourceOut(BaseModel):
    id: str
    source_type: SourceType
    source_identifier: str
    source_name: str
    is_active: bool
    last_processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
