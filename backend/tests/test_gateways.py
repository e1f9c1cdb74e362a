"""
Tests for gateway adapters and the helpers they rely on.
HTTP providers are exercised through httpx.MockTransport; the Stripe SDK is patched.
"""
import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlencode

import httpx
import pytest
import stripe

from app.api.webhooks import parse_webhook_body
from app.exceptions import (
    GatewayError,
    GatewayInitializationFailed,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidSignature,
)
from app.gateways.base import (
    GatewayConfig,
    GatewayOutcome,
    InitOptions,
    PaymentIntent,
    ProviderRefundStatus,
    WebhookRequest,
)
from app.gateways.paynow import PaynowGateway, generate_hash, map_status as paynow_status, parse_response
from app.gateways.registry import build_default_registry
from app.gateways.smilepay import SIGNATURE_HEADER, SmilePayGateway, map_status as smilepay_status, sign_body
from app.gateways.stripe_gateway import StripeGateway, map_session_status
from app.middleware.metrics_middleware import normalize_path
from app.models.payment_gateway import PaymentGateway
from app.utils.money import format_minor_units, parse_major_units
from app.utils.phone import normalize_msisdn

PAYNOW_KEY = "paynow-integration-key"
SMILEPAY_SECRET = "smilepay-webhook-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


def _intent(**overrides) -> PaymentIntent:
    values = dict(
        payment_id=42,
        reference="PAY-0A1B2C3D4E5F",
        amount_cents=2000,
        currency="USD",
        description="Harare Tech Summit - 2 registration(s)",
        payer_email="payer@example.com",
        payer_name="Tendai Moyo",
    )
    values.update(overrides)
    return PaymentIntent(**values)


def _signed_paynow_reply(fields) -> str:
    fields = list(fields)
    fields.append(("hash", generate_hash(fields, PAYNOW_KEY)))
    return urlencode(fields)


class Recorder:
    """MockTransport handler that records requests and answers from a callable."""

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def _paynow(handler) -> PaynowGateway:
    config = GatewayConfig(
        slug="paynow",
        name="Paynow",
        credentials={"integration_id": "1201", "integration_key": PAYNOW_KEY},
        supported_currencies=["USD"],
    )
    return PaynowGateway(config, transport=httpx.MockTransport(handler))


def _smilepay(handler=None, webhook_secret=SMILEPAY_SECRET) -> SmilePayGateway:
    config = GatewayConfig(
        slug="smile-and-pay",
        name="Smile&Pay",
        credentials={"api_key": "sp-key", "merchant_id": "M-77"},
        settings={"base_url": "https://smilepay.test/api"},
        webhook_secret=webhook_secret,
        supported_currencies=["USD", "ZIG"],
    )
    transport = httpx.MockTransport(handler) if handler else None
    return SmilePayGateway(config, transport=transport)


def _stripe(credentials=None) -> StripeGateway:
    config = GatewayConfig(
        slug="stripe",
        name="Stripe",
        credentials=credentials if credentials is not None else {"secret": "sk_test_123"},
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        supported_currencies=["USD"],
    )
    return StripeGateway(config, timeout=5)


def _stripe_webhook(event: dict, secret: str = STRIPE_WEBHOOK_SECRET) -> WebhookRequest:
    body = json.dumps(event).encode()
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return WebhookRequest(
        payload=event,
        raw_body=body,
        headers={"Stripe-Signature": f"t={timestamp},v1={signature}"},
    )


def _stripe_event(event_type: str, obj: dict) -> dict:
    return {
        "id": "evt_test_1",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


class TestHelpers:
    """Tests for money, phone, body parsing and path normalization helpers."""

    def test_format_minor_units(self):
        assert format_minor_units(1050) == "10.50"
        assert format_minor_units(2000) == "20.00"
        assert format_minor_units(5) == "0.05"

    def test_parse_major_units(self):
        assert parse_major_units("10.50") == 1050
        assert parse_major_units(20) == 2000
        assert parse_major_units("0.005") == 1

    def test_normalize_msisdn(self):
        assert normalize_msisdn("0771234567") == "263771234567"
        assert normalize_msisdn("+263 77 123 4567") == "263771234567"
        assert normalize_msisdn("771234567") == "263771234567"

    def test_normalize_msisdn_is_idempotent(self):
        once = normalize_msisdn("077-123-4567")
        assert normalize_msisdn(once) == once

    def test_normalize_msisdn_empty(self):
        with pytest.raises(ValueError):
            normalize_msisdn("  ")

    def test_parse_webhook_body_json(self):
        assert parse_webhook_body(b'{"type": "checkout.session.completed"}') == {"type": "checkout.session.completed"}

    def test_parse_webhook_body_form(self):
        assert parse_webhook_body(b"reference=PAY-1&status=Paid") == {"reference": "PAY-1", "status": "Paid"}

    def test_parse_webhook_body_other(self):
        assert parse_webhook_body(b"") == {}
        assert parse_webhook_body(b"[1, 2]") == {"raw": "[1, 2]"}

    def test_normalize_path(self):
        assert normalize_path("/api/payments/17/status") == "/api/payments/{id}/status"
        assert normalize_path("/api/tickets/3/check-in") == "/api/tickets/{id}/check-in"
        assert normalize_path("/api/payments/PAY-0A1B2C3D4E5F") == "/api/payments/{PAY}"
        assert normalize_path("/api/webhooks/smile-and-pay") == "/api/webhooks/smile-and-pay"


class TestRegistry:
    """Tests for slug -> adapter resolution."""

    def test_default_slugs(self):
        assert build_default_registry().slugs() == ["paynow", "smile-and-pay", "stripe"]

    def test_resolve_known_slug(self):
        gateway = PaymentGateway(name="Stripe", slug="stripe", credentials={"secret": "sk_test"}, settings={})

        adapter = build_default_registry().resolve(gateway)

        assert isinstance(adapter, StripeGateway)
        assert adapter.secret_key == "sk_test"

    def test_resolve_unknown_slug(self):
        gateway = PaymentGateway(name="SahwiPay", slug="sahwipay")

        with pytest.raises(GatewayUnavailable):
            build_default_registry().resolve(gateway)


class TestPaynowGateway:
    """Tests for the Paynow adapter."""

    def test_status_vocabulary(self):
        assert paynow_status("Paid") == GatewayOutcome.COMPLETED
        assert paynow_status("Awaiting Delivery") == GatewayOutcome.COMPLETED
        assert paynow_status("Cancelled") == GatewayOutcome.CANCELLED
        assert paynow_status("Disputed") == GatewayOutcome.FAILED
        assert paynow_status("Sent") == GatewayOutcome.PROCESSING
        assert paynow_status(None) == GatewayOutcome.PROCESSING

    def test_hash_is_uppercase_sha512(self):
        fields = [("id", "1201"), ("reference", "PAY-1"), ("amount", "20.00"), ("status", "Message")]
        expected = hashlib.sha512(f"1201PAY-120.00Message{PAYNOW_KEY}".encode()).hexdigest().upper()

        assert generate_hash(fields, PAYNOW_KEY) == expected
        assert generate_hash(fields + [("hash", "ignored")], PAYNOW_KEY) == expected

    def test_parse_response_accepts_newlines(self):
        assert parse_response("Status=Ok\nPollUrl=https://paynow.test/poll") == {
            "status": "Ok",
            "pollurl": "https://paynow.test/poll",
        }

    @pytest.mark.asyncio
    async def test_initialize_redirect(self):
        recorder = Recorder(lambda request: httpx.Response(200, text=_signed_paynow_reply([
            ("status", "Ok"),
            ("browserurl", "https://www.paynow.co.zw/Payment/ConfirmPayment/9001"),
            ("pollurl", "https://www.paynow.co.zw/Interface/CheckPayment/?guid=abc"),
            ("paynowreference", "9001"),
        ])))
        gateway = _paynow(recorder)

        result = await gateway.initialize_payment(_intent(), InitOptions(return_url="https://events.test/done"))

        assert result.gateway_data["payment_method"] == "redirect"
        assert result.gateway_data["redirect_url"] == "https://www.paynow.co.zw/Payment/ConfirmPayment/9001"
        assert result.gateway_data["poll_url"].endswith("guid=abc")

        request = recorder.requests[0]
        assert request.url.path.endswith("/initiatetransaction")
        sent = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        assert sent["amount"] == "20.00"
        assert sent["reference"] == "PAY-0A1B2C3D4E5F"
        assert sent["returnurl"] == "https://events.test/done"
        assert sent["resulturl"].endswith("/api/webhooks/paynow")
        assert sent["hash"] == generate_hash([(k, v) for k, v in sent.items()], PAYNOW_KEY)

    @pytest.mark.asyncio
    async def test_initialize_mobile_money(self):
        recorder = Recorder(lambda request: httpx.Response(200, text=_signed_paynow_reply([
            ("status", "Ok"),
            ("instructions", "Dial *151# and enter your PIN"),
            ("pollurl", "https://www.paynow.co.zw/Interface/CheckPayment/?guid=xyz"),
            ("paynowreference", "9002"),
        ])))
        gateway = _paynow(recorder)

        result = await gateway.initialize_payment(
            _intent(), InitOptions(payment_method="ecocash", phone="0771234567")
        )

        assert result.gateway_data["payment_method"] == "mobile_money"
        assert result.gateway_data["instructions"] == "Dial *151# and enter your PIN"
        request = recorder.requests[0]
        assert request.url.path.endswith("/remotetransaction")
        sent = parse_qs(request.content.decode())
        assert sent["phone"] == ["263771234567"]
        assert sent["method"] == ["ecocash"]
        assert sent["authemail"] == ["payer@example.com"]

    @pytest.mark.asyncio
    async def test_initialize_mobile_money_needs_phone(self):
        gateway = _paynow(Recorder(lambda request: httpx.Response(500)))

        with pytest.raises(GatewayInitializationFailed):
            await gateway.initialize_payment(_intent(), InitOptions(payment_method="ecocash"))

    @pytest.mark.asyncio
    async def test_initialize_rejected(self):
        gateway = _paynow(Recorder(lambda request: httpx.Response(200, text="status=Error&error=Invalid+amount")))

        with pytest.raises(GatewayInitializationFailed, match="Invalid amount"):
            await gateway.initialize_payment(_intent(), InitOptions())

    @pytest.mark.asyncio
    async def test_initialize_timeout(self):
        def respond(request):
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = _paynow(respond)

        with pytest.raises(GatewayTimeout):
            await gateway.initialize_payment(_intent(), InitOptions())

    @pytest.mark.asyncio
    async def test_verify_paid(self):
        recorder = Recorder(lambda request: httpx.Response(200, text=_signed_paynow_reply([
            ("reference", "PAY-0A1B2C3D4E5F"),
            ("paynowreference", "9001"),
            ("amount", "20.00"),
            ("status", "Paid"),
            ("pollurl", "https://www.paynow.co.zw/Interface/CheckPayment/?guid=abc"),
        ])))
        gateway = _paynow(recorder)
        intent = _intent(initialization={"poll_url": "https://www.paynow.co.zw/Interface/CheckPayment/?guid=abc"})

        result = await gateway.verify_payment(intent)

        assert result.status == GatewayOutcome.COMPLETED
        assert result.transaction_id == "9001"
        assert result.amount_cents == 2000
        assert recorder.requests[0].method == "GET"

    @pytest.mark.asyncio
    async def test_verify_rejects_tampered_reply(self):
        reply = _signed_paynow_reply([("reference", "PAY-1"), ("status", "Paid")]).replace("Paid", "Cancelled")
        gateway = _paynow(Recorder(lambda request: httpx.Response(200, text=reply)))
        intent = _intent(initialization={"poll_url": "https://www.paynow.co.zw/Interface/CheckPayment/?guid=abc"})

        with pytest.raises(GatewayError):
            await gateway.verify_payment(intent)

    @pytest.mark.asyncio
    async def test_verify_rejects_unsigned_reply(self):
        reply = urlencode([("reference", "PAY-0A1B2C3D4E5F"), ("amount", "20.00"), ("status", "Paid")])
        gateway = _paynow(Recorder(lambda request: httpx.Response(200, text=reply)))
        intent = _intent(initialization={"poll_url": "https://www.paynow.co.zw/Interface/CheckPayment/?guid=abc"})

        with pytest.raises(GatewayError):
            await gateway.verify_payment(intent)

    @pytest.mark.asyncio
    async def test_verify_without_poll_url(self):
        gateway = _paynow(Recorder(lambda request: httpx.Response(200)))

        with pytest.raises(GatewayError):
            await gateway.verify_payment(_intent())

    @pytest.mark.asyncio
    async def test_refund_requires_manual_processing(self):
        gateway = _paynow(Recorder(lambda request: httpx.Response(200)))

        result = await gateway.refund_payment(_intent(), 500)

        assert result.status == ProviderRefundStatus.MANUAL_PROCESSING_REQUIRED
        assert result.refund_id is None

    @pytest.mark.asyncio
    async def test_webhook_valid_hash(self):
        fields = [("reference", "PAY-0A1B2C3D4E5F"), ("paynowreference", "9001"), ("status", "Paid")]
        fields.append(("hash", generate_hash(fields, PAYNOW_KEY)))
        gateway = _paynow(Recorder(lambda request: httpx.Response(200)))

        result = await gateway.handle_webhook(WebhookRequest(payload=dict(fields)))

        assert result.status == GatewayOutcome.COMPLETED
        assert result.payment_reference == "PAY-0A1B2C3D4E5F"
        assert result.transaction_id == "9001"

    @pytest.mark.asyncio
    async def test_webhook_hash_mismatch(self):
        payload = {"reference": "PAY-0A1B2C3D4E5F", "status": "Paid", "hash": "DEADBEEF"}
        gateway = _paynow(Recorder(lambda request: httpx.Response(200)))

        with pytest.raises(InvalidSignature):
            await gateway.handle_webhook(WebhookRequest(payload=payload))

    @pytest.mark.asyncio
    async def test_webhook_without_hash(self):
        gateway = _paynow(Recorder(lambda request: httpx.Response(200)))

        with pytest.raises(InvalidSignature):
            await gateway.handle_webhook(WebhookRequest(payload={"reference": "PAY-1", "status": "Paid"}))


class TestSmilePayGateway:
    """Tests for the Smile&Pay adapter."""

    def test_status_vocabulary(self):
        assert smilepay_status("PAID") == GatewayOutcome.COMPLETED
        assert smilepay_status("success") == GatewayOutcome.COMPLETED
        assert smilepay_status("CANCELED") == GatewayOutcome.CANCELLED
        assert smilepay_status("FAILED") == GatewayOutcome.FAILED
        assert smilepay_status("PENDING") == GatewayOutcome.PROCESSING

    @pytest.mark.asyncio
    async def test_initialize_innbucks(self):
        recorder = Recorder(lambda request: httpx.Response(
            200, json={"transactionReference": "SP-1001", "innbucksPaymentCode": "558877"}
        ))
        gateway = _smilepay(recorder)

        result = await gateway.initialize_payment(_intent(), InitOptions(payment_method="innbucks"))

        assert result.gateway_data == {
            "payment_method": "innbucks",
            "transactionReference": "SP-1001",
            "payment_code": "558877",
        }
        request = recorder.requests[0]
        assert str(request.url) == "https://smilepay.test/api/payments/express-checkout/innbucks"
        assert request.headers["X-Api-Key"] == "sp-key"
        assert request.headers["X-Merchant-Id"] == "M-77"
        sent = json.loads(request.content)
        assert sent["orderReference"] == "PAY-0A1B2C3D4E5F"
        assert sent["amount"] == 20.0
        assert sent["currencyCode"] == "840"
        assert sent["firstName"] == "Tendai"
        assert sent["lastName"] == "Moyo"

    @pytest.mark.asyncio
    async def test_initialize_ecocash(self):
        recorder = Recorder(lambda request: httpx.Response(200, json={"transactionReference": "SP-1002"}))
        gateway = _smilepay(recorder)

        result = await gateway.initialize_payment(
            _intent(currency="ZIG"), InitOptions(payment_method="mobile_money", phone="0771234567")
        )

        assert result.gateway_data["payment_method"] == "ecocash"
        sent = json.loads(recorder.requests[0].content)
        assert sent["ecocashMobile"] == "263771234567"
        assert sent["currencyCode"] == "924"

    @pytest.mark.asyncio
    async def test_initialize_omari_requires_otp(self):
        gateway = _smilepay(Recorder(lambda request: httpx.Response(200, json={"transactionReference": "SP-1003"})))

        result = await gateway.initialize_payment(_intent(), InitOptions(payment_method="omari", phone="0781234567"))

        assert result.gateway_data["requires_otp"] is True
        assert result.gateway_data["transactionReference"] == "SP-1003"

    @pytest.mark.asyncio
    async def test_initialize_wallet_needs_phone(self):
        recorder = Recorder(lambda request: httpx.Response(200, json={}))
        gateway = _smilepay(recorder)

        with pytest.raises(GatewayInitializationFailed):
            await gateway.initialize_payment(_intent(), InitOptions(payment_method="ecocash"))
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_initialize_rejected(self):
        gateway = _smilepay(Recorder(lambda request: httpx.Response(400, json={"message": "Invalid merchant"})))

        with pytest.raises(GatewayInitializationFailed, match="Invalid merchant"):
            await gateway.initialize_payment(_intent(), InitOptions(payment_method="innbucks"))

    @pytest.mark.asyncio
    async def test_confirm_otp(self):
        recorder = Recorder(lambda request: httpx.Response(200, json={"status": "PENDING"}))
        gateway = _smilepay(recorder)

        response = await gateway.confirm_otp("SP-1003", "123456", "0781234567")

        assert response == {"status": "PENDING"}
        assert recorder.requests[0].url.path.endswith("/omari/confirmation")
        assert json.loads(recorder.requests[0].content)["omariMobile"] == "263781234567"

    @pytest.mark.asyncio
    async def test_verify(self):
        recorder = Recorder(lambda request: httpx.Response(
            200, json={"status": "PAID", "amount": "20.00", "reference": "SP-1001"}
        ))
        gateway = _smilepay(recorder)

        result = await gateway.verify_payment(_intent())

        assert result.status == GatewayOutcome.COMPLETED
        assert result.amount_cents == 2000
        assert result.transaction_id == "SP-1001"
        assert recorder.requests[0].url.path.endswith("/payments/transaction/PAY-0A1B2C3D4E5F/status/check")

    @pytest.mark.asyncio
    async def test_refund_requires_manual_processing(self):
        result = await _smilepay().refund_payment(_intent(), 2000)

        assert result.status == ProviderRefundStatus.MANUAL_PROCESSING_REQUIRED

    @pytest.mark.asyncio
    async def test_webhook_signed(self):
        body = json.dumps({"orderReference": "PAY-0A1B2C3D4E5F", "transactionReference": "SP-1001", "status": "PAID"}).encode()
        request = WebhookRequest(
            payload=json.loads(body),
            raw_body=body,
            headers={SIGNATURE_HEADER.lower(): sign_body(body, SMILEPAY_SECRET)},
        )

        result = await _smilepay().handle_webhook(request)

        assert result.status == GatewayOutcome.COMPLETED
        assert result.payment_reference == "PAY-0A1B2C3D4E5F"
        assert result.transaction_id == "SP-1001"

    @pytest.mark.asyncio
    async def test_webhook_missing_signature(self):
        body = b'{"orderReference": "PAY-1", "status": "PAID"}'

        with pytest.raises(InvalidSignature):
            await _smilepay().handle_webhook(WebhookRequest(payload=json.loads(body), raw_body=body))

    @pytest.mark.asyncio
    async def test_webhook_without_configured_secret(self):
        """Without a secret nothing can be authenticated, so nothing is accepted."""
        body = b'{"orderReference": "PAY-1", "status": "PAID"}'
        request = WebhookRequest(payload=json.loads(body), raw_body=body, headers={SIGNATURE_HEADER: "anything"})

        with pytest.raises(InvalidSignature):
            await _smilepay(webhook_secret=None).handle_webhook(request)


class TestStripeGateway:
    """Tests for the Stripe Checkout adapter."""

    def test_map_session_status(self):
        assert map_session_status("paid", "complete") == GatewayOutcome.COMPLETED
        assert map_session_status("no_payment_required", "complete") == GatewayOutcome.COMPLETED
        assert map_session_status("unpaid", "expired") == GatewayOutcome.CANCELLED
        assert map_session_status("unpaid", "open") == GatewayOutcome.PROCESSING

    @pytest.mark.asyncio
    async def test_initialize_creates_checkout_session(self):
        session = SimpleNamespace(
            id="cs_test_1",
            url="https://checkout.stripe.com/c/pay/cs_test_1",
            status="open",
            payment_status="unpaid",
            payment_intent=None,
            amount_total=2000,
            currency="usd",
            client_reference_id="PAY-0A1B2C3D4E5F",
        )
        create = MagicMock(return_value=session)

        with patch("stripe.checkout.Session.create", create):
            result = await _stripe().initialize_payment(_intent(), InitOptions(return_url="https://events.test/done"))

        assert result.gateway_data["session_id"] == "cs_test_1"
        assert result.gateway_data["redirect_url"] == "https://checkout.stripe.com/c/pay/cs_test_1"
        kwargs = create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test_123"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 2000
        assert kwargs["line_items"][0]["price_data"]["currency"] == "usd"
        assert kwargs["success_url"] == "https://events.test/done?session_id={CHECKOUT_SESSION_ID}"
        assert kwargs["client_reference_id"] == "PAY-0A1B2C3D4E5F"
        assert kwargs["metadata"]["payment_id"] == "42"

    @pytest.mark.asyncio
    async def test_initialize_stripe_error(self):
        with patch("stripe.checkout.Session.create", MagicMock(side_effect=stripe.StripeError("Your card was declined"))):
            with pytest.raises(GatewayInitializationFailed):
                await _stripe().initialize_payment(_intent(), InitOptions())

    @pytest.mark.asyncio
    async def test_initialize_without_secret_key(self):
        with pytest.raises(GatewayInitializationFailed):
            await _stripe(credentials={}).initialize_payment(_intent(), InitOptions())

    @pytest.mark.asyncio
    async def test_verify(self):
        session = SimpleNamespace(
            id="cs_test_1",
            url=None,
            status="complete",
            payment_status="paid",
            payment_intent="pi_123",
            amount_total=2000,
            currency="usd",
            client_reference_id="PAY-0A1B2C3D4E5F",
        )
        retrieve = MagicMock(return_value=session)

        with patch("stripe.checkout.Session.retrieve", retrieve):
            result = await _stripe().verify_payment(_intent(initialization={"session_id": "cs_test_1"}))

        assert result.status == GatewayOutcome.COMPLETED
        assert result.transaction_id == "pi_123"
        assert result.amount_cents == 2000
        assert retrieve.call_args.kwargs["id"] == "cs_test_1"

    @pytest.mark.asyncio
    async def test_verify_without_session(self):
        with pytest.raises(GatewayError):
            await _stripe().verify_payment(_intent())

    @pytest.mark.asyncio
    async def test_refund(self):
        create = MagicMock(return_value=SimpleNamespace(id="re_1", status="succeeded", amount=500))

        with patch("stripe.Refund.create", create):
            result = await _stripe().refund_payment(_intent(transaction_id="pi_123"), 500)

        assert result.refund_id == "re_1"
        assert result.status == ProviderRefundStatus.SUCCEEDED
        assert create.call_args.kwargs["payment_intent"] == "pi_123"
        assert create.call_args.kwargs["amount"] == 500

    @pytest.mark.asyncio
    async def test_refund_pending(self):
        create = MagicMock(return_value=SimpleNamespace(id="re_2", status="pending", amount=500))

        with patch("stripe.Refund.create", create):
            result = await _stripe().refund_payment(_intent(transaction_id="pi_123"), 500)

        assert result.status == ProviderRefundStatus.PENDING

    @pytest.mark.asyncio
    async def test_webhook_checkout_completed(self):
        request = _stripe_webhook(_stripe_event("checkout.session.completed", {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_status": "paid",
            "status": "complete",
            "payment_intent": "pi_123",
            "client_reference_id": "PAY-0A1B2C3D4E5F",
            "metadata": {"payment_id": "42"},
        }))

        result = await _stripe().handle_webhook(request)

        assert result.status == GatewayOutcome.COMPLETED
        assert result.payment_id == 42
        assert result.payment_reference == "PAY-0A1B2C3D4E5F"
        assert result.transaction_id == "pi_123"

    @pytest.mark.asyncio
    async def test_webhook_payment_failed_is_not_terminal(self):
        """A declined card can be retried in the same Checkout Session."""
        request = _stripe_webhook(_stripe_event("payment_intent.payment_failed", {
            "id": "pi_123",
            "object": "payment_intent",
            "metadata": {"payment_id": "42", "payment_reference": "PAY-0A1B2C3D4E5F"},
            "last_payment_error": {"message": "Your card has insufficient funds."},
        }))

        result = await _stripe().handle_webhook(request)

        assert result.status is None
        assert result.payment_id == 42
        assert result.failure_reason == "Your card has insufficient funds."

    @pytest.mark.asyncio
    async def test_webhook_expired_session(self):
        request = _stripe_webhook(_stripe_event("checkout.session.expired", {
            "id": "cs_test_1",
            "object": "checkout.session",
            "status": "expired",
            "payment_status": "unpaid",
            "client_reference_id": "PAY-0A1B2C3D4E5F",
        }))

        result = await _stripe().handle_webhook(request)

        assert result.status == GatewayOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_webhook_unhandled_event(self):
        request = _stripe_webhook(_stripe_event("customer.created", {"id": "cus_1", "object": "customer"}))

        result = await _stripe().handle_webhook(request)

        assert result.status is None
        assert result.event_type == "customer.created"

    @pytest.mark.asyncio
    async def test_webhook_bad_signature(self):
        request = _stripe_webhook(
            _stripe_event("checkout.session.completed", {"id": "cs_test_1", "payment_status": "paid"}),
            secret="whsec_someone_else",
        )

        with pytest.raises(InvalidSignature):
            await _stripe().handle_webhook(request)

    @pytest.mark.asyncio
    async def test_webhook_missing_signature(self):
        event = _stripe_event("checkout.session.completed", {"id": "cs_test_1"})

        with pytest.raises(InvalidSignature):
            await _stripe().handle_webhook(WebhookRequest(payload=event, raw_body=json.dumps(event).encode()))
