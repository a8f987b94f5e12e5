from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CLASSIFY_PROMPT = """Analyze this group chat message or web page and determine if it contains a casting call \
or job opportunity for actors, models, or entertainment industry professionals.

Consider it a casting call if it mentions:
- Auditions, casting calls, or job opportunities
- Specific roles, characters, or projects
- Production companies or entertainment industry context
- Application deadlines or requirements
- Compensation or pay information

Ignore general job postings, random conversations, spam, advertisements and personal messages.

Content to analyze:
"{text}"

Answer with only YES or NO:"""

EXTRACT_PROMPT = """Extract casting call information from this content.

Return a JSON object with these fields (use null for missing information):
- title: The job/role title
- description: Full description of the opportunity
- company: Production company or organization name
- location: Where the work will take place
- compensation: Pay rate or salary (if mentioned)
- requirements: Skills, experience, or qualifications needed
- deadline: Application deadline (if mentioned)
- contactInfo: How to apply or contact information

Only extract information that is actually present. If something isn't mentioned, use null.

Content:
"{text}"

Return only valid JSON:"""


class ClassifierUnavailableError(Exception):
    """Raised on transient collaborator faults; the job queue retries these."""


class ExtractedFields(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    company: str | None = None
    location: str | None = None
    compensation: str | None = None
    requirements: str | None = None
    deadline: str | None = None
    contact_info: str | None = Field(default=None, alias="contactInfo")

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")

    @field_validator(
        "description",
        "company",
        "location",
        "compensation",
        "requirements",
        "deadline",
        "contact_info",
        mode="before",
    )
    @classmethod
    def _coerce_optional_text(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value if value.strip() else None
        if isinstance(value, list):
            parts = [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]
            return ", ".join(parts) or None
        return None


class TextClassifier(Protocol):
    async def classify(self, text: str) -> bool: ...

    async def extract(self, text: str) -> ExtractedFields | None: ...


class OpenAIChatClassifier:
    """Chat-completions backed classifier.

    Works against any OpenAI-compatible endpoint. Timeouts, connection errors,
    429 and 5xx responses raise ``ClassifierUnavailableError``; any other
    non-success response counts as a negative answer.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def classify(self, text: str) -> bool:
        answer = await self._complete(CLASSIFY_PROMPT.format(text=text), max_tokens=10)
        if answer is None:
            return False
        return answer.strip().strip(".").upper() == "YES"

    async def extract(self, text: str) -> ExtractedFields | None:
        answer = await self._complete(EXTRACT_PROMPT.format(text=text), max_tokens=2000)
        if answer is None:
            return None

        data = parse_json_object(answer)
        if data is None:
            logger.warning("extraction response was not a JSON object")
            return None
        try:
            return ExtractedFields.model_validate(data)
        except ValidationError as exc:
            logger.info("extraction rejected: %s", exc.errors()[0].get("msg") if exc.errors() else exc)
            return None

    async def _complete(self, prompt: str, *, max_tokens: int) -> str | None:
        if not self.api_key:
            raise ClassifierUnavailableError("classifier API key is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "model": self.model,
                        "messages": [{"role": "user", "content": prompt}],
                        "temperature": 0.1,
                        "max_tokens": max_tokens,
                    },
                )
        except httpx.TimeoutException as exc:
            raise ClassifierUnavailableError("classifier request timed out") from exc
        except httpx.TransportError as exc:
            raise ClassifierUnavailableError(f"classifier request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ClassifierUnavailableError(f"classifier returned {response.status_code}")
        if response.status_code >= 400:
            logger.warning("classifier rejected request status=%s", response.status_code)
            return None

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.warning("classifier response had unexpected shape")
            return None
        return content if isinstance(content, str) else None


def parse_json_object(raw: str) -> dict[str, Any] | None:
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
