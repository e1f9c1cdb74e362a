"""
Webhook endpoints for payment gateways.
One route per gateway slug; authentication, deduplication and settlement
happen in the webhook ingestion service.
"""
import json
import logging
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.gateways.base import WebhookRequest
from app.services.webhook_service import WebhookIngestionService, get_webhook_service

router = APIRouter()
logger = logging.getLogger(__name__)


def parse_webhook_body(body: bytes) -> dict:
    """
    Decode a webhook body: JSON first (Stripe, Smile&Pay), then
    form-encoded (Paynow). Anything else is kept raw for the log.
    """
    if not body:
        return {}
    text = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        return payload

    form = dict(parse_qsl(text, keep_blank_values=True)) if "=" in text else {}
    if form:
        return form
    return {"raw": text}


@router.post("/{gateway_slug}")
async def receive_webhook(
    gateway_slug: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: WebhookIngestionService = Depends(get_webhook_service),
):
    """
    Receive a gateway notification.

    Returns 200 once the webhook has been processed (or was a duplicate) and
    500 otherwise, so the gateway retries. Details stay in the webhook log.
    """
    body = await request.body()
    webhook = WebhookRequest(
        payload=parse_webhook_body(body),
        raw_body=body,
        headers=dict(request.headers),
    )

    outcome = await service.ingest(db, gateway_slug, webhook)

    if not outcome.success:
        logger.warning(
            f"Webhook from {gateway_slug} failed",
            extra={"event": "webhook_rejected", "gateway": gateway_slug, "webhook_log_id": outcome.webhook_log_id}
        )
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Webhook processing failed"},
        )

    return {"status": "success"}
