from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

from casting_pipeline.services.classifier import ExtractedFields
from casting_pipeline.services.repository import RepositoryDuplicateError

logger = logging.getLogger(__name__)

_DEADLINE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)

AdmitOutcome = Literal["created", "duplicate"]


@dataclass(slots=True)
class AdmitResult:
    outcome: AdmitOutcome
    casting_call_id: str
    content_hash: str


class CastingCallRepository(Protocol):
    async def find_casting_call_id_by_hash(self, content_hash: str) -> str | None: ...

    async def insert_casting_call(
        self,
        *,
        title: str,
        description: str | None,
        company: str | None,
        location: str | None,
        compensation: str | None,
        requirements: str | None,
        deadline: datetime | None,
        contact_info: str | None,
        source_url: str | None,
        source_id: str | None,
        content_hash: str,
    ) -> str: ...


def content_hash(
    title: str | None,
    description: str | None,
    company: str | None,
    location: str | None,
) -> str:
    joined = "|".join(value or "" for value in (title, description, company, location))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def parse_deadline(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if not text:
        return None

    iso_text = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        parsed = datetime.fromisoformat(iso_text)
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in _DEADLINE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class DeduplicationGuard:
    def __init__(self, repository: CastingCallRepository) -> None:
        self.repository = repository

    async def admit(
        self,
        fields: ExtractedFields,
        *,
        source_url: str | None,
        source_id: str | None,
    ) -> AdmitResult:
        digest = content_hash(fields.title, fields.description, fields.company, fields.location)
        existing_id = await self.repository.find_casting_call_id_by_hash(digest)
        if existing_id is not None:
            logger.info("duplicate casting call content_hash=%s existing_id=%s", digest, existing_id)
            return AdmitResult(outcome="duplicate", casting_call_id=existing_id, content_hash=digest)

        try:
            created_id = await self.repository.insert_casting_call(
                title=fields.title,
                description=fields.description,
                company=fields.company,
                location=fields.location,
                compensation=fields.compensation,
                requirements=fields.requirements,
                deadline=parse_deadline(fields.deadline),
                contact_info=fields.contact_info,
                source_url=source_url,
                source_id=source_id,
                content_hash=digest,
            )
        except RepositoryDuplicateError as exc:
            # Lost the insert race to a concurrent worker.
            return AdmitResult(outcome="duplicate", casting_call_id=exc.existing_id, content_hash=digest)

        logger.info("casting call created id=%s content_hash=%s", created_id, digest)
        return AdmitResult(outcome="created", casting_call_id=created_id, content_hash=digest)
