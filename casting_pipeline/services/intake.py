from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

from casting_pipeline.schemas.intake import ChatMessageData, ChatWebhookEnvelope, PageIntakeRequest
from casting_pipeline.services.repository import GROUP_CHAT_SUFFIX, RepositoryNotFoundError

logger = logging.getLogger(__name__)

MESSAGE_EVENTS = {"message", "messages.upsert"}


class SkipReason(str, Enum):
    NOT_GROUP_MESSAGE = "not_group_message"
    NOT_MESSAGE_EVENT = "not_message_event"
    OLD_MESSAGE = "old_message"
    NO_ACTIVE_SOURCE = "no_active_source"
    ALREADY_PROCESSED = "already_processed"
    INSUFFICIENT_TEXT = "insufficient_text"


@dataclass(slots=True)
class IntakeDecision:
    skipped: SkipReason | None = None
    message_id: str | None = None
    job_id: str | None = None

    @property
    def queued(self) -> bool:
        return self.skipped is None and self.job_id is not None


class IntakeRepository(Protocol):
    async def find_active_source(self, *, source_type: str, source_identifier: str) -> dict[str, Any] | None: ...

    async def get_source(self, source_id: str) -> dict[str, Any]: ...

    async def has_processed_message(self, *, source_type: str, external_message_id: str) -> bool: ...

    async def record_message_and_enqueue_extraction(
        self,
        *,
        source_id: str,
        source_type: str,
        external_message_id: str,
        payload: dict[str, Any],
    ) -> str | None: ...


def extract_message_text(data: ChatMessageData) -> str:
    """Return the first non-empty text of a chat message.

    Plain text bodies win over media captions; captions are checked in the
    order image, video, document.
    """
    candidates = [
        data.text.body if data.text else None,
        data.image.caption if data.image else None,
        data.video.caption if data.video else None,
        data.document.caption if data.document else None,
    ]
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return ""


def chat_message_url(chat_id: str, message_id: str) -> str:
    return f"whatsapp://group/{chat_id}/message/{message_id}"


def page_external_id(page_url: str, page_text: str) -> str:
    return hashlib.sha256(f"{page_url}{page_text}".encode("utf-8")).hexdigest()


class IntakeFilter:
    def __init__(self, repository: IntakeRepository, *, recency_window_hours: float, min_text_length: int) -> None:
        self.repository = repository
        self.recency_window = timedelta(hours=recency_window_hours)
        self.min_text_length = min_text_length

    async def accept_chat_event(
        self,
        envelope: ChatWebhookEnvelope,
        *,
        now: datetime | None = None,
    ) -> IntakeDecision:
        data = envelope.data
        if data is None or not data.chat_id.endswith(GROUP_CHAT_SUFFIX):
            return self._skip(SkipReason.NOT_GROUP_MESSAGE, data.id if data else None)
        if envelope.event not in MESSAGE_EVENTS:
            return self._skip(SkipReason.NOT_MESSAGE_EVENT, data.id)

        current = now or datetime.now(timezone.utc)
        occurred_at = datetime.fromtimestamp(data.timestamp, tz=timezone.utc)
        if self._is_stale(occurred_at, current):
            return self._skip(SkipReason.OLD_MESSAGE, data.id)

        source = await self.repository.find_active_source(source_type="WHATSAPP", source_identifier=data.chat_id)
        if source is None:
            return self._skip(SkipReason.NO_ACTIVE_SOURCE, data.id)

        return await self._admit(
            source=source,
            external_message_id=data.id,
            text=extract_message_text(data),
            source_url=chat_message_url(data.chat_id, data.id),
            occurred_at=occurred_at,
            received_at=current,
        )

    async def accept_page(self, request: PageIntakeRequest, *, now: datetime | None = None) -> IntakeDecision:
        current = now or datetime.now(timezone.utc)
        occurred_at = request.fetched_at or current
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        if self._is_stale(occurred_at, current):
            return self._skip(SkipReason.OLD_MESSAGE, request.external_id)

        source = await self._find_active_web_source(request.source_id)
        if source is None:
            return self._skip(SkipReason.NO_ACTIVE_SOURCE, request.external_id)

        page_url = request.page_url or source["source_identifier"]
        page_text = request.page_text.strip()
        external_id = request.external_id or page_external_id(page_url, page_text)
        return await self._admit(
            source=source,
            external_message_id=external_id,
            text=page_text,
            source_url=page_url,
            occurred_at=occurred_at,
            received_at=current,
        )

    async def _admit(
        self,
        *,
        source: dict[str, Any],
        external_message_id: str,
        text: str,
        source_url: str,
        occurred_at: datetime,
        received_at: datetime,
    ) -> IntakeDecision:
        source_type = source["source_type"]
        if await self.repository.has_processed_message(
            source_type=source_type,
            external_message_id=external_message_id,
        ):
            return self._skip(SkipReason.ALREADY_PROCESSED, external_message_id)

        if len(text) < self.min_text_length:
            return self._skip(SkipReason.INSUFFICIENT_TEXT, external_message_id)

        payload = {
            "source_id": source["id"],
            "source_type": source_type,
            "source_name": source["source_name"],
            "source_url": source_url,
            "external_message_id": external_message_id,
            "text": text,
            "occurred_at": occurred_at.isoformat(),
            "received_at": received_at.isoformat(),
        }
        job_id = await self.repository.record_message_and_enqueue_extraction(
            source_id=source["id"],
            source_type=source_type,
            external_message_id=external_message_id,
            payload=payload,
        )
        if job_id is None:
            return self._skip(SkipReason.ALREADY_PROCESSED, external_message_id)

        logger.info(
            "intake queued source_id=%s external_message_id=%s job_id=%s",
            source["id"],
            external_message_id,
            job_id,
        )
        return IntakeDecision(message_id=external_message_id, job_id=job_id)

    async def _find_active_web_source(self, source_id: str) -> dict[str, Any] | None:
        try:
            source = await self.repository.get_source(source_id)
        except RepositoryNotFoundError:
            return None
        if source["source_type"] != "WEB" or not source["is_active"]:
            return None
        return source

    def _is_stale(self, occurred_at: datetime, now: datetime) -> bool:
        return occurred_at <= now - self.recency_window

    @staticmethod
    def _skip(reason: SkipReason, message_id: str | None) -> IntakeDecision:
        logger.info("intake skipped reason=%s message_id=%s", reason.value, message_id)
        return IntakeDecision(skipped=reason, message_id=message_id)
