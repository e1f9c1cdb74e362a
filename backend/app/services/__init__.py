"""
Business logic services.
"""
from app.services.payment_ledger import PaymentLedger
from app.services.settlement_service import SettlementService
from app.services.ticket_service import TicketService
from app.services.webhook_service import WebhookIngestionService

__all__ = [
    "PaymentLedger",
    "SettlementService",
    "TicketService",
    "WebhookIngestionService",
]
