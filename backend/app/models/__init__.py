"""
Database models package.
"""
from app.models.base import Base
from app.models.user import User
from app.models.event import Event, EventRegistration, RegistrationStatus
from app.models.payment_gateway import PaymentGateway
from app.models.payment import (
    Payment,
    PaymentItem,
    PaymentGatewayResponse,
    PaymentStatus,
    GatewayResponseKind,
)
from app.models.refund import Refund, RefundStatus
from app.models.webhook_log import WebhookLog, WebhookLogStatus
from app.models.ticket import Ticket, TicketStatus

__all__ = [
    "Base",
    "User",
    "Event",
    "EventRegistration",
    "RegistrationStatus",
    "PaymentGateway",
    "Payment",
    "PaymentItem",
    "PaymentGatewayResponse",
    "PaymentStatus",
    "GatewayResponseKind",
    "Refund",
    "RefundStatus",
    "WebhookLog",
    "WebhookLogStatus",
    "Ticket",
    "TicketStatus",
]
