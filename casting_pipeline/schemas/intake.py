from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# 9999-12-31T23:59:59Z; millisecond epochs land above this.
MAX_EPOCH_SECONDS = 253402300799


class MessageText(BaseModel):
    body: str | None = None


class MediaCaption(BaseModel):
    caption: str | None = None

    model_config = ConfigDict(extra="ignore")


class ChatMessageData(BaseModel):
    id: str
    chat_id: str = Field(alias="chatId")
    timestamp: int = Field(ge=0, le=MAX_EPOCH_SECONDS)
    sender: str | None = Field(default=None, alias="from")
    type: str | None = None
    text: MessageText | None = None
    image: MediaCaption | None = None
    video: MediaCaption | None = None
    document: MediaCaption | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChatWebhookEnvelope(BaseModel):
    event: str
    instance_id: str | None = Field(default=None, alias="instanceId")
    data: ChatMessageData | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PageIntakeRequest(BaseModel):
    source_id: str = Field(min_length=1)
    page_text: str
    page_url: str | None = None
    fetched_at: datetime | None = None
    external_id: str | None = Field(default=None, min_length=1, max_length=512)


class IntakeAck(BaseModel):
    received: bool = True
    skipped: str | None = None
    queued: bool | None = None
    message_id: str | None = None
    job_id: str | None = None


class WebhookVerification(BaseModel):
    verified: bool | None = None
    status: str | None = None
    endpoint: str | None = None
    timestamp: datetime | None = None
