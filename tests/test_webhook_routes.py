from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import os
import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

from casting_pipeline.core.config import get_settings

SECRET = "whapi-secret"
GROUP_ID = "120363X@g.us"


def _body(*, message_id: str = "wamid-1", text: str | None = None, **overrides: Any) -> bytes:
    envelope = {
        "event": "messages.upsert",
        "instanceId": "instance-1",
        "data": {
            "id": message_id,
            "chatId": GROUP_ID,
            "timestamp": int(time.time()) - 60,
            "from": "9665000000@s.whatsapp.net",
            "type": "text",
            "text": {"body": text or "Open casting for a TV commercial in Jeddah, ages 20-30, paid."},
        },
    }
    envelope.update(overrides)
    return json.dumps(envelope).encode("utf-8")


def _sign(body: bytes) -> str:
    return hmac.new(SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture
def signed_client(api_client: TestClient, memory_repository) -> TestClient:
    os.environ["CP_WEBHOOK_SECRET"] = SECRET
    os.environ["CP_WEBHOOK_VERIFY_TOKEN"] = "verify-me"
    get_settings.cache_clear()
    asyncio.run(
        memory_repository.create_source(
            source_type="WHATSAPP",
            source_identifier=GROUP_ID,
            source_name="Jeddah talent",
        )
    )
    yield api_client
    os.environ.pop("CP_WEBHOOK_SECRET", None)
    os.environ.pop("CP_WEBHOOK_VERIFY_TOKEN", None)
    get_settings.cache_clear()


def test_signed_message_is_queued_then_deduplicated(signed_client: TestClient, memory_repository) -> None:
    body = _body()

    first = signed_client.post("/webhooks/whatsapp", content=body, headers={"X-Webhook-Signature": _sign(body)})
    second = signed_client.post("/webhooks/whatsapp", content=body, headers={"X-Webhook-Signature": _sign(body)})

    assert first.status_code == 200
    first_data = first.json()
    assert first_data["received"] is True
    assert first_data["queued"] is True
    assert first_data["message_id"] == "wamid-1"
    assert first_data["job_id"] in memory_repository.jobs
    assert "skipped" not in first_data

    assert second.status_code == 200
    assert second.json() == {"received": True, "skipped": "already_processed"}
    assert len(memory_repository.jobs) == 1


def test_prefixed_signature_is_accepted(signed_client: TestClient) -> None:
    body = _body(message_id="wamid-2")
    response = signed_client.post(
        "/webhooks/whatsapp",
        content=body,
        headers={"X-Webhook-Signature": f"sha256={_sign(body)}"},
    )
    assert response.status_code == 200
    assert response.json()["queued"] is True


def test_bad_or_missing_signature_is_rejected(signed_client: TestClient, memory_repository) -> None:
    body = _body()
    missing = signed_client.post("/webhooks/whatsapp", content=body)
    forged = signed_client.post("/webhooks/whatsapp", content=body, headers={"X-Webhook-Signature": "0" * 64})

    assert missing.status_code == 401
    assert forged.status_code == 401
    assert memory_repository.jobs == {}


def test_malformed_envelope_is_acknowledged_as_invalid(signed_client: TestClient) -> None:
    body = b'{"event": "messages.upsert", "data": {"chatId": 5}}'
    response = signed_client.post("/webhooks/whatsapp", content=body, headers={"X-Webhook-Signature": _sign(body)})
    assert response.status_code == 200
    assert response.json() == {"received": True, "skipped": "invalid_payload"}


def test_millisecond_timestamp_is_rejected_as_invalid_payload(signed_client: TestClient, memory_repository) -> None:
    body = _body(message_id="wamid-ms")
    envelope = json.loads(body)
    envelope["data"]["timestamp"] = int(time.time() * 1000)
    body = json.dumps(envelope).encode("utf-8")

    response = signed_client.post("/webhooks/whatsapp", content=body, headers={"X-Webhook-Signature": _sign(body)})

    assert response.status_code == 200
    assert response.json() == {"received": True, "skipped": "invalid_payload"}
    assert memory_repository.jobs == {}


def test_short_message_reports_skip_reason(signed_client: TestClient) -> None:
    body = _body(message_id="wamid-3", text="hi all")
    response = signed_client.post("/webhooks/whatsapp", content=body, headers={"X-Webhook-Signature": _sign(body)})
    assert response.json() == {"received": True, "skipped": "insufficient_text"}


def test_unsigned_delivery_allowed_without_secret(api_client: TestClient) -> None:
    response = api_client.post("/webhooks/whatsapp", content=_body())
    assert response.status_code == 200
    assert response.json() == {"received": True, "skipped": "no_active_source"}


def test_verification_endpoint(signed_client: TestClient) -> None:
    verified = signed_client.get("/webhooks/whatsapp", params={"verify_token": "verify-me"})
    status_only = signed_client.get("/webhooks/whatsapp")

    assert verified.json() == {"verified": True}
    assert status_only.json()["status"] == "healthy"
    assert status_only.json()["endpoint"] == "whatsapp-webhook"
