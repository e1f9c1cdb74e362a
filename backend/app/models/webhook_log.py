"""
Webhook log model.
Every incoming webhook is persisted before it is processed.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Enum, Index, Text
import enum

from app.models.base import Base, utcnow
from app.models.types import JSONBCompat


class WebhookLogStatus(str, enum.Enum):
    """Processing status of a received webhook."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookLog(Base):
    """
    Raw webhook as received.
    Only status, processed_at and error_message change after insert.
    """

    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_gateway_id = Column(Integer, ForeignKey("payment_gateways.id", ondelete="SET NULL"), nullable=True)
    gateway_slug = Column(String(64), nullable=False)
    event_type = Column(String(255), nullable=True)
    payload = Column(JSONBCompat, nullable=True)
    payload_hash = Column(String(64), nullable=False)  # SHA-256 of the raw body

    status = Column(
        Enum(WebhookLogStatus, name="webhooklogstatus"),
        nullable=False,
        default=WebhookLogStatus.PENDING
    )
    error_message = Column(Text, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_webhook_log_dedup", "gateway_slug", "payload_hash", "status"),
    )

    def __repr__(self):
        return f"<WebhookLog(id={self.id}, gateway={self.gateway_slug}, status={self.status})>"
