"""
Base classes for payment gateway adapters.
All providers implement this interface so the settlement service can charge,
verify, refund and ingest webhooks without knowing which provider it talks to.

Adapters never touch the database: they receive a provider-neutral
PaymentIntent and return plain result objects.
"""
import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx

from app.config import settings
from app.exceptions import GatewayError, GatewayTimeout
from app.utils.logging import log_gateway_failure, log_gateway_request
from app.utils.metrics import gateway_failures_total, gateway_latency_seconds, gateway_requests_total

logger = logging.getLogger(__name__)


class GatewayOutcome(str, enum.Enum):
    """Provider-neutral payment status reported by an adapter."""
    COMPLETED = "completed"
    PROCESSING = "processing"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ProviderRefundStatus(str, enum.Enum):
    """Refund status reported by an adapter."""
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    MANUAL_PROCESSING_REQUIRED = "manual_processing_required"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass
class GatewayConfig:
    """Everything an adapter needs from the payment_gateways row."""
    slug: str
    name: str
    credentials: Dict[str, Any] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)
    webhook_secret: Optional[str] = None
    webhook_url: Optional[str] = None
    supported_currencies: List[str] = field(default_factory=list)

    @classmethod
    def from_model(cls, gateway) -> "GatewayConfig":
        return cls(
            slug=gateway.slug,
            name=gateway.name,
            credentials=dict(gateway.credentials or {}),
            settings=dict(gateway.settings or {}),
            webhook_secret=gateway.webhook_secret,
            webhook_url=gateway.webhook_url,
            supported_currencies=list(gateway.supported_currencies or []),
        )


@dataclass
class PaymentIntent:
    """Provider-neutral view of a payment."""
    payment_id: int
    reference: str
    amount_cents: int
    currency: str
    description: str
    payer_email: Optional[str] = None
    payer_name: Optional[str] = None
    payment_method: Optional[str] = None
    payment_phone: Optional[str] = None
    transaction_id: Optional[str] = None
    initialization: Dict[str, Any] = field(default_factory=dict)  # Latest initialization entry


@dataclass
class InitOptions:
    """Caller-supplied options for initializing a payment."""
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    payment_method: Optional[str] = None
    phone: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InitResult:
    # gateway_data is returned to the client; raw_response is logged
    gateway_data: Dict[str, Any]
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifyResult:
    status: GatewayOutcome
    transaction_id: Optional[str] = None
    amount_cents: Optional[int] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    refund_id: Optional[str]
    status: ProviderRefundStatus
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookRequest:
    """Incoming webhook: parsed payload plus the raw body and headers used for signatures."""
    payload: Dict[str, Any]
    raw_body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class WebhookResult:
    """
    Authenticated webhook outcome.
    status=None means the event carries no payment outcome and is ignored.
    """
    status: Optional[GatewayOutcome]
    payment_reference: Optional[str] = None
    payment_id: Optional[int] = None
    transaction_id: Optional[str] = None
    event_type: Optional[str] = None
    failure_reason: Optional[str] = None


class PaymentGatewayAdapter(ABC):
    """
    Abstract base class for payment gateway adapters.

    All adapters must implement:
    - initialize_payment(): start a payment with the provider
    - verify_payment(): pull the current status (side-effect free)
    - refund_payment(): refund all or part of a payment
    - handle_webhook(): authenticate and interpret a webhook
    """

    def __init__(self, config: GatewayConfig):
        self.config = config

    @property
    def slug(self) -> str:
        return self.config.slug

    @abstractmethod
    async def initialize_payment(self, intent: PaymentIntent, options: InitOptions) -> InitResult:
        """
        Start a payment with the provider.

        Raises:
            GatewayInitializationFailed: If the provider rejects the payment
            GatewayTimeout: If the provider does not answer in time
        """
        pass

    @abstractmethod
    async def verify_payment(self, intent: PaymentIntent) -> VerifyResult:
        """Pull the payment status from the provider."""
        pass

    @abstractmethod
    async def refund_payment(self, intent: PaymentIntent, amount_cents: int) -> RefundResult:
        """
        Refund ``amount_cents`` of a payment.
        Providers without a refund API return MANUAL_PROCESSING_REQUIRED.
        """
        pass

    @abstractmethod
    async def handle_webhook(self, request: WebhookRequest) -> WebhookResult:
        """
        Authenticate and interpret a webhook.

        Raises:
            InvalidSignature: If the payload cannot be authenticated
        """
        pass

    def _observe(self, operation: str, started: float, reference: Optional[str] = None, error=None):
        """Record latency, counters and a structured log line for one provider call."""
        duration = time.time() - started
        gateway_requests_total.labels(gateway=self.slug, operation=operation).inc()
        gateway_latency_seconds.labels(gateway=self.slug, operation=operation).observe(duration)
        if error is not None:
            gateway_failures_total.labels(gateway=self.slug, operation=operation).inc()
            log_gateway_failure(
                logger,
                gateway=self.slug,
                operation=operation,
                error=str(error),
                duration_ms=duration * 1000,
                payment_reference=reference,
            )
        else:
            log_gateway_request(
                logger,
                gateway=self.slug,
                operation=operation,
                duration_ms=duration * 1000,
                payment_reference=reference,
            )


class HttpGatewayAdapter(PaymentGatewayAdapter):
    """
    Adapter base for providers spoken to over plain HTTP.

    Every request uses httpx.AsyncClient with an explicit timeout. A custom
    transport can be injected (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(config)
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.gateway_timeout_seconds

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        reference: Optional[str] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Send one request to the provider.

        Raises:
            GatewayTimeout: On connect/read timeouts
            GatewayError: On any other transport error
        """
        started = time.time()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            self._observe(operation, started, reference, error=e)
            raise GatewayTimeout(
                f"{self.config.name} did not respond within {self._timeout}s",
                gateway=self.slug,
            ) from e
        except httpx.HTTPError as e:
            self._observe(operation, started, reference, error=e)
            raise GatewayError(f"{self.config.name} request failed: {e}", gateway=self.slug) from e

        if response.is_error:
            self._observe(operation, started, reference, error=f"HTTP {response.status_code}")
        else:
            self._observe(operation, started, reference)
        return response
