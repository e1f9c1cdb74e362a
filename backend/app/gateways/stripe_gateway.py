"""
Stripe adapter (hosted Checkout).

The Stripe SDK is synchronous, so every call runs in a worker thread under
asyncio.wait_for with the gateway timeout. The secret key is passed per call
(api_key=...) since each gateway row carries its own credentials.
"""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import stripe

from app.exceptions import GatewayError, GatewayInitializationFailed, GatewayTimeout, InvalidSignature
from app.gateways.base import (
    GatewayOutcome,
    InitOptions,
    InitResult,
    PaymentGatewayAdapter,
    PaymentIntent,
    ProviderRefundStatus,
    RefundResult,
    VerifyResult,
    WebhookRequest,
    WebhookResult,
)
from app.config import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"

REFUND_STATUS_MAP = {
    "succeeded": ProviderRefundStatus.SUCCEEDED,
    "pending": ProviderRefundStatus.PENDING,
    "requires_action": ProviderRefundStatus.PENDING,
    "failed": ProviderRefundStatus.FAILED,
    "canceled": ProviderRefundStatus.CANCELED,
}


def map_session_status(payment_status: Optional[str], session_status: Optional[str]) -> GatewayOutcome:
    if payment_status in ("paid", "no_payment_required"):
        return GatewayOutcome.COMPLETED
    if session_status == "expired":
        return GatewayOutcome.CANCELLED
    return GatewayOutcome.PROCESSING


def _append_session_placeholder(url: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={{CHECKOUT_SESSION_ID}}"


def _session_snapshot(session) -> Dict[str, Any]:
    """The parts of a Checkout Session worth keeping in the response log."""
    return {
        "id": getattr(session, "id", None),
        "url": getattr(session, "url", None),
        "status": getattr(session, "status", None),
        "payment_status": getattr(session, "payment_status", None),
        "payment_intent": getattr(session, "payment_intent", None),
        "amount_total": getattr(session, "amount_total", None),
        "currency": getattr(session, "currency", None),
        "client_reference_id": getattr(session, "client_reference_id", None),
    }


def _metadata_payment_id(obj) -> Optional[int]:
    metadata = obj.get("metadata") or {}
    try:
        return int(metadata["payment_id"]) if metadata.get("payment_id") else None
    except (TypeError, ValueError):
        return None


class StripeGateway(PaymentGatewayAdapter):
    """Stripe Checkout adapter."""

    def __init__(self, config, timeout: Optional[float] = None):
        super().__init__(config)
        self._timeout = timeout if timeout is not None else settings.gateway_timeout_seconds

    @property
    def secret_key(self) -> Optional[str]:
        return self.config.credentials.get("secret") or self.config.credentials.get("secret_key")

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.config.webhook_secret or self.config.credentials.get("webhook_secret")

    async def _call(self, operation: str, fn, reference: Optional[str] = None, error_cls=GatewayError, **kwargs):
        """Run one SDK call off the event loop, mapping timeouts and Stripe errors."""
        if not self.secret_key:
            raise error_cls("Stripe secret key is not configured", gateway=self.slug)

        started = time.time()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=self.secret_key, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            self._observe(operation, started, reference, error="timeout")
            raise GatewayTimeout(f"Stripe did not respond within {self._timeout}s", gateway=self.slug) from e
        except stripe.StripeError as e:
            self._observe(operation, started, reference, error=e)
            message = getattr(e, "user_message", None) or str(e)
            raise error_cls(f"Stripe error: {message}", gateway=self.slug) from e

        self._observe(operation, started, reference)
        return result

    async def initialize_payment(self, intent: PaymentIntent, options: InitOptions) -> InitResult:
        if intent.amount_cents <= 0:
            raise GatewayInitializationFailed("Payment amount must be greater than zero", gateway=self.slug)

        return_url = options.return_url or settings.default_return_url
        cancel_url = options.cancel_url or options.return_url or settings.default_cancel_url
        metadata = {"payment_id": str(intent.payment_id), "payment_reference": intent.reference}

        session = await self._call(
            "initialize",
            stripe.checkout.Session.create,
            reference=intent.reference,
            error_cls=GatewayInitializationFailed,
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": intent.currency.lower(),
                    "product_data": {
                        "name": intent.description,
                        "description": "Event Registration",
                    },
                    "unit_amount": intent.amount_cents,
                },
                "quantity": 1,
            }],
            mode="payment",
            success_url=_append_session_placeholder(return_url),
            cancel_url=cancel_url,
            client_reference_id=intent.reference,
            customer_email=intent.payer_email or None,
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
        )

        gateway_data = {
            "payment_method": "redirect",
            "session_id": session.id,
            "redirect_url": session.url,
            "checkout_url": session.url,
            "payment_intent_id": getattr(session, "payment_intent", None),
        }
        return InitResult(gateway_data=gateway_data, raw_response=_session_snapshot(session))

    async def verify_payment(self, intent: PaymentIntent) -> VerifyResult:
        session_id = (intent.initialization or {}).get("session_id")
        if not session_id:
            raise GatewayError("Stripe session ID not found in payment data", gateway=self.slug)

        session = await self._call("verify", stripe.checkout.Session.retrieve, reference=intent.reference, id=session_id)
        return VerifyResult(
            status=map_session_status(getattr(session, "payment_status", None), getattr(session, "status", None)),
            transaction_id=getattr(session, "payment_intent", None),
            amount_cents=getattr(session, "amount_total", None),
            raw_response=_session_snapshot(session),
        )

    async def refund_payment(self, intent: PaymentIntent, amount_cents: int) -> RefundResult:
        if not intent.transaction_id:
            raise GatewayError("No Stripe PaymentIntent on record to refund", gateway=self.slug)

        refund = await self._call(
            "refund",
            stripe.Refund.create,
            reference=intent.reference,
            payment_intent=intent.transaction_id,
            amount=amount_cents,
            reason="requested_by_customer",
            metadata={"payment_id": str(intent.payment_id)},
        )
        status = REFUND_STATUS_MAP.get(getattr(refund, "status", None), ProviderRefundStatus.PENDING)
        return RefundResult(
            refund_id=refund.id,
            status=status,
            raw_response={
                "id": refund.id,
                "status": getattr(refund, "status", None),
                "amount": getattr(refund, "amount", None),
            },
        )

    async def handle_webhook(self, request: WebhookRequest) -> WebhookResult:
        secret = self.webhook_secret
        if not secret:
            raise InvalidSignature("Stripe webhook secret is not configured")
        signature = request.header(SIGNATURE_HEADER)
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(request.raw_body, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Invalid Stripe webhook signature") from e
        except ValueError as e:
            raise InvalidSignature("Stripe webhook payload is not valid JSON") from e

        # StripeObject is not a dict; read the verified body as plain JSON
        event_data = json.loads(request.raw_body)
        event_type = event_data.get("type") or ""
        obj = (event_data.get("data") or {}).get("object") or {}

        if event_type.startswith("checkout.session."):
            if event_type == "checkout.session.completed":
                status = map_session_status(obj.get("payment_status"), obj.get("status"))
            elif event_type == "checkout.session.async_payment_succeeded":
                status = GatewayOutcome.COMPLETED
            elif event_type == "checkout.session.async_payment_failed":
                status = GatewayOutcome.FAILED
            elif event_type == "checkout.session.expired":
                status = GatewayOutcome.CANCELLED
            else:
                status = None
            return WebhookResult(
                status=status,
                payment_reference=obj.get("client_reference_id"),
                payment_id=_metadata_payment_id(obj),
                transaction_id=obj.get("payment_intent"),
                event_type=event_type,
                failure_reason=f"Stripe event {event_type}" if status in (GatewayOutcome.FAILED, GatewayOutcome.CANCELLED) else None,
            )

        if event_type == "payment_intent.payment_failed":
            # The payer can retry inside the same Checkout Session; the session
            # events carry the terminal outcome
            last_error = obj.get("last_payment_error") or {}
            logger.info(
                f"Stripe: card declined for PaymentIntent {obj.get('id')}: {last_error.get('message')}",
                extra={"event": "stripe_payment_attempt_failed", "payment_id": _metadata_payment_id(obj)},
            )
            return WebhookResult(
                status=None,
                payment_id=_metadata_payment_id(obj),
                transaction_id=obj.get("id"),
                event_type=event_type,
                failure_reason=last_error.get("message") or "Card declined",
            )

        logger.info(f"Stripe: unhandled webhook event type {event_type}", extra={"event": "stripe_webhook_ignored"})
        return WebhookResult(status=None, event_type=event_type)
