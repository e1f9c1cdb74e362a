"""
Smile&Pay adapter (ZB Bank express checkout).

Supports InnBucks, EcoCash, O'mari (two-step, OTP confirmed) and card via MPGS.
Requests are JSON authenticated with X-Api-Key / X-Merchant-Id headers;
webhooks are signed with base64(HMAC-SHA256(raw_body, webhook_secret)) in
the X-SmilePay-Signature header.
"""
import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

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
from app.utils.money import parse_major_units
from app.utils.phone import normalize_msisdn

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-SmilePay-Signature"

STATUS_MAP = {
    "PAID": GatewayOutcome.COMPLETED,
    "SUCCESS": GatewayOutcome.COMPLETED,
    "CANCELED": GatewayOutcome.CANCELLED,
    "CANCELLED": GatewayOutcome.CANCELLED,
    "FAILED": GatewayOutcome.FAILED,
}

# ISO 4217 numeric codes
DEFAULT_CURRENCY_CODES = {"USD": "840", "ZIG": "924"}

CHECKOUT_PATHS = {
    "innbucks": "/payments/express-checkout/innbucks",
    "ecocash": "/payments/express-checkout/ecocash",
    "omari": "/payments/express-checkout/omari",
    "card": "/payments/express-checkout/mpgs",
}

CARD_FIELDS = ("pan", "expMonth", "expYear", "securityCode")


def map_status(raw_status: Optional[str]) -> GatewayOutcome:
    return STATUS_MAP.get(str(raw_status or "").strip().upper(), GatewayOutcome.PROCESSING)


def _json_body(response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def sign_body(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class SmilePayGateway(HttpGatewayAdapter):
    """Smile&Pay wallets and card adapter."""

    @property
    def base_url(self) -> str:
        return (self.config.settings.get("base_url") or settings.smilepay_base_url).rstrip("/")

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.config.webhook_secret or self.config.credentials.get("webhook_secret")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.credentials.get("api_key"):
            headers["X-Api-Key"] = self.config.credentials["api_key"]
        if self.config.credentials.get("merchant_id"):
            headers["X-Merchant-Id"] = str(self.config.credentials["merchant_id"])
        return headers

    def _currency_code(self, currency: str) -> str:
        codes = {**DEFAULT_CURRENCY_CODES, **(self.config.settings.get("currency_map") or {})}
        return codes.get(currency.upper(), "840")

    def _phone(self, intent: PaymentIntent, options: InitOptions) -> Optional[str]:
        phone = options.phone or intent.payment_phone
        if not phone:
            return None
        return normalize_msisdn(phone, self.config.settings.get("country_code") or settings.mobile_money_country_code)

    def _base_payload(self, intent: PaymentIntent, options: InitOptions) -> Dict[str, Any]:
        name_parts = (intent.payer_name or "").split(" ", 1)
        first_name = name_parts[0]
        last_name = name_parts[1] if len(name_parts) > 1 else name_parts[0]
        return {
            "orderReference": intent.reference,
            "amount": round(intent.amount_cents / 100, 2),
            "returnUrl": options.return_url or self.config.settings.get("return_url") or settings.default_return_url,
            "resultUrl": self.config.webhook_url or f"{settings.public_base_url}/api/webhooks/{self.slug}",
            "itemName": intent.description,
            "itemDescription": "Event Registration",
            "currencyCode": self._currency_code(intent.currency),
            "firstName": first_name,
            "lastName": last_name,
            "mobilePhoneNumber": self._phone(intent, options),
            "email": intent.payer_email,
            "cancelUrl": options.cancel_url or self.config.settings.get("cancel_url") or settings.default_cancel_url,
            "failureUrl": options.extra.get("failure_url") or self.config.settings.get("failure_url"),
        }

    async def _post(self, operation: str, path: str, payload: Dict[str, Any], reference: Optional[str] = None):
        response = await self._request(
            operation,
            "POST",
            self.base_url + path,
            reference=reference,
            json=payload,
            headers=self._headers(),
        )
        return response, _json_body(response)

    async def initialize_payment(self, intent: PaymentIntent, options: InitOptions) -> InitResult:
        method = (options.payment_method or intent.payment_method or "card").lower()
        if method == "mobile_money":
            method = "ecocash"
        if method not in CHECKOUT_PATHS:
            raise GatewayInitializationFailed(f"Unsupported Smile&Pay method: {method}", gateway=self.slug)

        payload = self._base_payload(intent, options)
        if method == "ecocash":
            payload["ecocashMobile"] = payload["mobilePhoneNumber"]
        elif method == "omari":
            payload["omariMobile"] = payload["mobilePhoneNumber"]
        elif method == "card":
            # Card data only arrives tokenized from the hosted form
            payload.update({key: options.extra[key] for key in CARD_FIELDS if key in options.extra})
            payload["paymentMethod"] = options.extra.get("paymentMethod", "WALLETPLUS")

        if method in ("ecocash", "omari") and not payload["mobilePhoneNumber"]:
            raise GatewayInitializationFailed(f"A phone number is required for {method}", gateway=self.slug)

        response, body = await self._post("initialize", CHECKOUT_PATHS[method], payload, intent.reference)
        if response.is_error:
            message = body.get("message")
            raise GatewayInitializationFailed(
                f"Smile&Pay rejected the payment: {message or f'HTTP {response.status_code}'}",
                gateway=self.slug,
            )

        gateway_data = {
            "payment_method": method,
            "transactionReference": body.get("transactionReference"),
        }
        if method == "innbucks":
            gateway_data["payment_code"] = body.get("innbucksPaymentCode")
        elif method == "omari":
            gateway_data["requires_otp"] = True
        elif method == "card":
            for key in ("redirectHtml", "authenticationStatus", "gatewayRecommendation", "customizedHtml"):
                gateway_data[key] = body.get(key)

        return InitResult(gateway_data=gateway_data, raw_response={"method": method, "response": body})

    async def confirm_otp(self, transaction_reference: str, otp: str, mobile: str) -> Dict[str, Any]:
        """Second step of an O'mari payment: confirm the OTP sent to the payer."""
        payload = {
            "transactionReference": transaction_reference,
            "otp": otp,
            "omariMobile": normalize_msisdn(mobile),
        }
        response, body = await self._post("confirm_otp", "/payments/express-checkout/omari/confirmation", payload)
        if response.is_error:
            raise GatewayError(f"Smile&Pay OTP confirmation failed: HTTP {response.status_code}", gateway=self.slug)
        return body

    async def verify_payment(self, intent: PaymentIntent) -> VerifyResult:
        url = f"{self.base_url}/payments/transaction/{intent.reference}/status/check"
        response = await self._request("verify", "GET", url, reference=intent.reference, headers=self._headers())
        if response.is_error:
            raise GatewayError(f"Smile&Pay status check failed: HTTP {response.status_code}", gateway=self.slug)

        body = _json_body(response)
        amount = body.get("amount")
        return VerifyResult(
            status=map_status(body.get("status")),
            transaction_id=body.get("reference") or body.get("transactionReference"),
            amount_cents=parse_major_units(amount) if amount is not None else None,
            raw_response=body,
        )

    async def refund_payment(self, intent: PaymentIntent, amount_cents: int) -> RefundResult:
        logger.warning(
            f"Smile&Pay has no refund API; refund of {amount_cents} for {intent.reference} needs manual processing",
            extra={"event": "smilepay_manual_refund", "payment_id": intent.payment_id}
        )
        return RefundResult(
            refund_id=None,
            status=ProviderRefundStatus.MANUAL_PROCESSING_REQUIRED,
            raw_response={"message": "Smile&Pay refunds must be processed manually"},
        )

    async def handle_webhook(self, request: WebhookRequest) -> WebhookResult:
        secret = self.webhook_secret
        if not secret:
            raise InvalidSignature("Smile&Pay webhook secret is not configured")
        provided = request.header(SIGNATURE_HEADER)
        if not provided:
            raise InvalidSignature("Missing Smile&Pay signature header")
        if not hmac.compare_digest(sign_body(request.raw_body, secret), provided.strip()):
            raise InvalidSignature("Invalid Smile&Pay signature")

        payload = request.payload or {}
        raw_status = payload.get("status")
        return WebhookResult(
            status=map_status(raw_status),
            payment_reference=payload.get("orderReference") or payload.get("order_reference"),
            transaction_id=payload.get("transactionReference") or payload.get("reference"),
            event_type=f"status:{raw_status}" if raw_status else None,
            failure_reason=payload.get("message") or (f"Smile&Pay reported status {raw_status}" if raw_status else None),
        )
