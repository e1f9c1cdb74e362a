"""
Paynow adapter (Zimbabwe).

Paynow speaks form-encoded key=value messages signed with a SHA-512 hash:
upper-case hex of sha512(concat(values in order, excluding "hash") + integration_key).

Redirect payments go through /initiatetransaction and return a browser URL.
Mobile money (express checkout) goes through /remotetransaction and pushes a
prompt to the payer's phone instead. Paynow has no refund API.
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import parse_qsl

from app.config import settings
from app.exceptions import GatewayError, GatewayInitializationFailed, InvalidSignature
from app.gateways.base import (
    GatewayOutcome,
    HttpGatewayAdapter,
    InitOptions,
    InitResult,
    PaymentIntent,
    ProviderRefundStatus,
    RefundResult,
    VerifyResult,
    WebhookRequest,
    WebhookResult,
)
from app.utils.money import format_minor_units, parse_major_units
from app.utils.phone import normalize_msisdn

logger = logging.getLogger(__name__)

# Paynow status -> internal outcome; anything else is still in flight
STATUS_MAP = {
    "paid": GatewayOutcome.COMPLETED,
    "awaiting delivery": GatewayOutcome.COMPLETED,
    "delivered": GatewayOutcome.COMPLETED,
    "cancelled": GatewayOutcome.CANCELLED,
    "failed": GatewayOutcome.FAILED,
    "disputed": GatewayOutcome.FAILED,
    "refunded": GatewayOutcome.FAILED,
}

MOBILE_MONEY_METHODS = {"mobile_money", "ecocash", "onemoney", "innbucks"}


def map_status(raw_status: Optional[str]) -> GatewayOutcome:
    return STATUS_MAP.get((raw_status or "").strip().lower(), GatewayOutcome.PROCESSING)


def generate_hash(values: Iterable[Tuple[str, Any]], integration_key: str) -> str:
    """SHA-512 signature over ordered (key, value) pairs, skipping the hash field."""
    concatenated = "".join(str(value) for key, value in values if key.lower() != "hash")
    return hashlib.sha512((concatenated + integration_key).encode("utf-8")).hexdigest().upper()


def hash_matches(values: Iterable[Tuple[str, Any]], provided: str, integration_key: str) -> bool:
    expected = generate_hash(values, integration_key)
    return hmac.compare_digest(expected, (provided or "").strip().upper())


def parse_response(body: str) -> Dict[str, str]:
    """
    Parse a Paynow reply into a dict with lower-cased keys, preserving order.
    Accepts both '&'-joined (URL-encoded) and newline-separated messages.
    """
    normalized = body.replace("\r\n", "&").replace("\n", "&")
    return {key.strip().lower(): value.strip() for key, value in parse_qsl(normalized, keep_blank_values=True)}


class PaynowGateway(HttpGatewayAdapter):
    """Paynow redirect and mobile money adapter."""

    @property
    def integration_id(self) -> str:
        return str(self.config.credentials.get("integration_id", ""))

    @property
    def integration_key(self) -> str:
        return str(self.config.credentials.get("integration_key", ""))

    def _result_url(self) -> str:
        return self.config.webhook_url or f"{settings.public_base_url}/api/webhooks/{self.slug}"

    def _is_mobile(self, method: Optional[str]) -> bool:
        return (method or "").lower() in MOBILE_MONEY_METHODS

    def _mobile_method(self, method: str, options: InitOptions) -> str:
        if method.lower() != "mobile_money":
            return method.lower()
        return options.extra.get("method") or self.config.settings.get("default_mobile_method", "ecocash")

    def _check_reply_hash(self, result: Dict[str, str]) -> bool:
        provided = result.get("hash")
        if not provided:
            return False
        return hash_matches(result.items(), provided, self.integration_key)

    async def initialize_payment(self, intent: PaymentIntent, options: InitOptions) -> InitResult:
        if not self.integration_id or not self.integration_key:
            raise GatewayInitializationFailed("Paynow integration credentials are not configured", gateway=self.slug)

        method = options.payment_method or intent.payment_method or "card"
        data = {
            "id": self.integration_id,
            "reference": intent.reference,
            "amount": format_minor_units(intent.amount_cents),
            "additionalinfo": intent.description,
            "returnurl": options.return_url or settings.default_return_url,
            "resulturl": self._result_url(),
        }

        mobile = self._is_mobile(method)
        if mobile:
            phone = options.phone or intent.payment_phone
            if not phone:
                raise GatewayInitializationFailed("A phone number is required for mobile money", gateway=self.slug)
            data["authemail"] = intent.payer_email or ""
            data["phone"] = normalize_msisdn(
                phone, self.config.settings.get("country_code") or settings.mobile_money_country_code
            )
            data["method"] = self._mobile_method(method, options)
            url = self.config.settings.get("remote_url") or settings.paynow_remote_url
        else:
            url = self.config.settings.get("initiate_url") or settings.paynow_initiate_url

        data["status"] = "Message"
        data["hash"] = generate_hash(data.items(), self.integration_key)

        response = await self._request("initialize", "POST", url, reference=intent.reference, data=data)
        result = parse_response(response.text)

        if response.is_error or result.get("status", "").lower() != "ok":
            error = result.get("error") or f"HTTP {response.status_code}"
            raise GatewayInitializationFailed(f"Paynow rejected the payment: {error}", gateway=self.slug)
        if not self._check_reply_hash(result):
            raise GatewayInitializationFailed("Paynow reply failed hash verification", gateway=self.slug)

        gateway_data = {
            "payment_method": "mobile_money" if mobile else "redirect",
            "poll_url": result.get("pollurl"),
            "redirect_url": result.get("browserurl"),
            "paynow_reference": result.get("paynowreference"),
            "instructions": result.get("instructions"),
        }
        return InitResult(gateway_data=gateway_data, raw_response=result)

    async def verify_payment(self, intent: PaymentIntent) -> VerifyResult:
        poll_url = (intent.initialization or {}).get("poll_url")
        if not poll_url:
            raise GatewayError("Poll URL not found in payment data", gateway=self.slug)

        response = await self._request("verify", "GET", poll_url, reference=intent.reference)
        if response.is_error:
            raise GatewayError(f"Paynow status poll failed: HTTP {response.status_code}", gateway=self.slug)

        result = parse_response(response.text)
        if not self._check_reply_hash(result):
            raise GatewayError("Paynow status reply failed hash verification", gateway=self.slug)

        amount_cents = parse_major_units(result["amount"]) if result.get("amount") else None
        return VerifyResult(
            status=map_status(result.get("status")),
            transaction_id=result.get("paynowreference"),
            amount_cents=amount_cents,
            raw_response=result,
        )

    async def refund_payment(self, intent: PaymentIntent, amount_cents: int) -> RefundResult:
        # No refund API; refunds are done by hand in the Paynow dashboard
        logger.info(
            f"Paynow refund of {amount_cents} for {intent.reference} requires manual processing",
            extra={"event": "paynow_manual_refund", "payment_id": intent.payment_id}
        )
        return RefundResult(
            refund_id=None,
            status=ProviderRefundStatus.MANUAL_PROCESSING_REQUIRED,
            raw_response={"message": "Paynow refunds must be processed manually through the dashboard"},
        )

    async def handle_webhook(self, request: WebhookRequest) -> WebhookResult:
        payload = request.payload or {}
        provided = payload.get("hash")
        if not self.integration_key:
            raise InvalidSignature("Paynow integration key is not configured")
        if not provided:
            raise InvalidSignature("Paynow webhook carries no hash")
        if not hash_matches(payload.items(), provided, self.integration_key):
            raise InvalidSignature("Paynow webhook hash mismatch")

        raw_status = payload.get("status")
        return WebhookResult(
            status=map_status(raw_status),
            payment_reference=payload.get("reference"),
            transaction_id=payload.get("paynowreference"),
            event_type=f"status:{raw_status}" if raw_status else None,
            failure_reason=f"Paynow reported status {raw_status}" if raw_status else None,
        )
