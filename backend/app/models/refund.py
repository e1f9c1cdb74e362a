"""
Refund model.
A refund is always created against a completed or partially refunded payment.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Enum, Text
import enum

from app.models.base import Base, generate_reference, utcnow
from app.models.types import JSONBCompat


class RefundStatus(str, enum.Enum):
    """Status of a refund."""
    PENDING = "pending"
    PROCESSING = "processing"  # Accepted by the provider or awaiting manual processing
    COMPLETED = "completed"
    FAILED = "failed"


# Refunds that count against the refundable amount
RESERVING_REFUND_STATUSES = (RefundStatus.PENDING, RefundStatus.PROCESSING, RefundStatus.COMPLETED)


def generate_refund_reference() -> str:
    return generate_reference("REF")


class Refund(Base):
    """Full or partial refund of a payment."""

    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    processed_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    refund_reference = Column(String(32), nullable=False, unique=True, default=generate_refund_reference)
    gateway_refund_id = Column(String(255), nullable=True)

    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(
        Enum(RefundStatus, name="refundstatus"),
        nullable=False,
        default=RefundStatus.PENDING
    )

    reason = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    gateway_response = Column(JSONBCompat, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Refund(id={self.id}, payment_id={self.payment_id}, amount_cents={self.amount_cents}, status={self.status})>"
