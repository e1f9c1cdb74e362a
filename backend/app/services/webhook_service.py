"""
Webhook ingestion.

Every webhook is logged before anything else happens, then authenticated by
the gateway adapter, deduplicated and applied through the settlement
service. ingest() never raises: the outcome is recorded on the WebhookLog.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import GatewayUnavailable, PaymentNotFound
from app.gateways.base import GatewayOutcome, WebhookRequest
from app.models.payment import GatewayResponseKind, Payment
from app.models.payment_gateway import PaymentGateway
from app.models.webhook_log import WebhookLog, WebhookLogStatus
from app.services.settlement_service import SettlementService, settlement_service as default_settlement
from app.utils.clock import SystemClock
from app.utils.logging import log_webhook_failed, log_webhook_processed
from app.utils.metrics import webhooks_received_total

logger = logging.getLogger(__name__)


@dataclass
class WebhookOutcome:
    success: bool
    webhook_log_id: int
    duplicate: bool = False
    payment_id: Optional[int] = None
    error: Optional[str] = None


def payload_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body or b"").hexdigest()


def _event_type(payload: dict) -> Optional[str]:
    for key in ("type", "event", "event_type", "status"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value[:255]
    return None


class WebhookIngestionService:
    """Log-first webhook processing."""

    def __init__(self, settlement: Optional[SettlementService] = None, clock=None):
        self.settlement = settlement or default_settlement
        self.clock = clock or self.settlement.clock or SystemClock()

    async def ingest(self, db: AsyncSession, gateway_slug: str, request: WebhookRequest) -> WebhookOutcome:
        """
        Log, authenticate, deduplicate and apply one webhook.

        Returns:
            WebhookOutcome; success=False means the log was marked failed
        """
        digest = payload_hash(request.raw_body)
        gateway_result = await db.execute(select(PaymentGateway).where(PaymentGateway.slug == gateway_slug))
        gateway = gateway_result.scalar_one_or_none()

        log = WebhookLog(
            payment_gateway_id=gateway.id if gateway else None,
            gateway_slug=gateway_slug,
            event_type=_event_type(request.payload or {}),
            payload=request.payload,
            payload_hash=digest,
            status=WebhookLogStatus.PENDING,
            created_at=self.clock.now(),
        )
        db.add(log)
        await db.commit()
        log_id = log.id

        try:
            duplicate = await db.execute(
                select(WebhookLog.id)
                .where(WebhookLog.gateway_slug == gateway_slug)
                .where(WebhookLog.payload_hash == digest)
                .where(WebhookLog.status == WebhookLogStatus.PROCESSED)
                .where(WebhookLog.id != log_id)
                .limit(1)
            )
            if duplicate.scalar_one_or_none() is not None:
                await self._finish(db, log_id, WebhookLogStatus.PROCESSED, "Duplicate of an already processed webhook")
                webhooks_received_total.labels(gateway=gateway_slug, result="duplicate").inc()
                log_webhook_processed(logger, gateway=gateway_slug, webhook_log_id=log_id, duplicate=True)
                return WebhookOutcome(success=True, webhook_log_id=log_id, duplicate=True)

            payment_id = await self._apply(db, gateway, gateway_slug, request)
        except Exception as e:
            await db.rollback()
            await self._finish(db, log_id, WebhookLogStatus.FAILED, str(e) or e.__class__.__name__)
            webhooks_received_total.labels(gateway=gateway_slug, result="failed").inc()
            log_webhook_failed(logger, gateway=gateway_slug, webhook_log_id=log_id, error=str(e))
            return WebhookOutcome(success=False, webhook_log_id=log_id, error=str(e))

        await self._finish(db, log_id, WebhookLogStatus.PROCESSED)
        webhooks_received_total.labels(gateway=gateway_slug, result="processed").inc()
        log_webhook_processed(
            logger,
            gateway=gateway_slug,
            webhook_log_id=log_id,
            payment_id=payment_id,
        )
        return WebhookOutcome(success=True, webhook_log_id=log_id, payment_id=payment_id)

    async def _apply(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway],
        gateway_slug: str,
        request: WebhookRequest,
    ) -> Optional[int]:
        if gateway is None or not gateway.is_active:
            raise GatewayUnavailable(f"Payment gateway '{gateway_slug}' is not available")

        adapter = self.settlement.registry.resolve(gateway)
        # Signature failures stop here, before any payment lookup
        result = await adapter.handle_webhook(request)

        if result.status is None:
            return None

        payment = await self._find_payment(db, gateway.id, result)
        if payment is None:
            raise PaymentNotFound(
                f"No payment for webhook (reference={result.payment_reference}, id={result.payment_id})"
            )
        payment_id = payment.id

        self.settlement.append_response(
            db,
            payment_id,
            GatewayResponseKind.WEBHOOK,
            {
                "status": result.status.value,
                "event_type": result.event_type,
                "transaction_id": result.transaction_id,
                "payload": request.payload,
            },
        )
        await db.commit()

        if result.status == GatewayOutcome.COMPLETED:
            await self.settlement.mark_as_paid(db, payment_id, result.transaction_id)
        elif result.status in (GatewayOutcome.FAILED, GatewayOutcome.CANCELLED):
            await self.settlement.record_gateway_outcome(db, payment_id, result.status, result.failure_reason)
        return payment_id

    @staticmethod
    async def _find_payment(db: AsyncSession, gateway_id: int, result) -> Optional[Payment]:
        if result.payment_id is not None:
            payment = await db.get(Payment, result.payment_id)
            if payment is not None:
                return payment
        if result.payment_reference:
            found = await db.execute(select(Payment).where(Payment.payment_reference == result.payment_reference))
            payment = found.scalar_one_or_none()
            if payment is not None:
                return payment
        if result.transaction_id:
            found = await db.execute(
                select(Payment)
                .where(Payment.gateway_transaction_id == result.transaction_id)
                .where(Payment.payment_gateway_id == gateway_id)
            )
            return found.scalars().first()
        return None

    async def _finish(self, db: AsyncSession, log_id: int, status: WebhookLogStatus, error: Optional[str] = None):
        await db.execute(
            update(WebhookLog)
            .where(WebhookLog.id == log_id)
            .values(status=status, error_message=error, processed_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()


# Global webhook ingestion service instance
webhook_service = WebhookIngestionService()


def get_webhook_service() -> WebhookIngestionService:
    """Dependency for FastAPI routes (overridden in tests)."""
    return webhook_service
