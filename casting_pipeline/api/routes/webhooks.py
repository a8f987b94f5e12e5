import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import ValidationError

from casting_pipeline.api.deps import get_intake_filter
from casting_pipeline.core.config import Settings, get_settings
from casting_pipeline.core.security import verify_webhook_signature
from casting_pipeline.schemas.intake import ChatWebhookEnvelope, IntakeAck, WebhookVerification
from casting_pipeline.services.repository import RepositoryUnavailableError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/whatsapp", response_model=IntakeAck, response_model_exclude_none=True)
async def receive_chat_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    intake_filter=Depends(get_intake_filter),
    x_webhook_signature: str | None = Header(default=None, alias="X-Webhook-Signature"),
) -> IntakeAck:
    body = await request.body()
    if settings.webhook_secret and not verify_webhook_signature(body, x_webhook_signature, settings.webhook_secret):
        logger.warning("webhook signature rejected")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid webhook signature")

    try:
        envelope = ChatWebhookEnvelope.model_validate_json(body)
    except ValidationError:
        logger.info("webhook payload rejected as malformed")
        return IntakeAck(skipped="invalid_payload")

    try:
        decision = await intake_filter.accept_chat_event(envelope)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if decision.skipped is not None:
        return IntakeAck(skipped=decision.skipped.value)
    return IntakeAck(queued=True, message_id=decision.message_id, job_id=decision.job_id)


@router.get("/whatsapp", response_model=WebhookVerification, response_model_exclude_none=True)
async def verify_chat_webhook(
    settings: Settings = Depends(get_settings),
    verify_token: str | None = Query(default=None),
) -> WebhookVerification:
    expected = settings.webhook_verify_token
    if verify_token and expected and hmac.compare_digest(verify_token, expected):
        return WebhookVerification(verified=True)
    return WebhookVerification(
        status="healthy",
        endpoint="whatsapp-webhook",
        timestamp=datetime.now(timezone.utc),
    )
