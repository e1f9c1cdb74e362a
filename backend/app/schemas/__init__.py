"""
Pydantic schemas for API request/response validation.
"""
from app.schemas.payment import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentResponse,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
)
from app.schemas.ticket import (
    TicketResponse,
    TicketScanRequest,
    TicketScanResponse,
)
from app.schemas.gateway import (
    PaymentGatewayPublic,
    PaymentGatewayAdmin,
    PaymentGatewayCreate,
    PaymentGatewayUpdate,
)

__all__ = [
    "PaymentInitiateRequest",
    "PaymentInitiateResponse",
    "PaymentResponse",
    "PaymentStatusResponse",
    "RefundRequest",
    "RefundResponse",
    "TicketResponse",
    "TicketScanRequest",
    "TicketScanResponse",
    "PaymentGatewayPublic",
    "PaymentGatewayAdmin",
    "PaymentGatewayCreate",
    "PaymentGatewayUpdate",
]
