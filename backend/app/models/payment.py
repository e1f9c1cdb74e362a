"""
Payment ledger models.

A Payment is one checkout attempt, charged through a single gateway and
covering one or more event registrations (PaymentItems). Every response a
gateway sends about a payment is kept in an append-only log
(PaymentGatewayResponse) instead of being merged into a mutable blob.

Status changes are owned by the settlement service and always go through
conditional updates guarded by PAYMENT_TRANSITIONS.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Enum, Index, Text
from sqlalchemy.orm import relationship
import enum

from app.models.base import Base, generate_reference, utcnow
from app.models.types import JSONBCompat


class PaymentStatus(str, enum.Enum):
    """Status of a payment."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# Legal transitions: source -> allowed targets
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
}

# Statuses in which the covered registrations count as paid
PAID_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)

# Statuses reached after a successful settlement
SETTLED_STATUSES = (
    PaymentStatus.COMPLETED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
)

# Statuses that can still be refunded
REFUNDABLE_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Whether ``current -> target`` is a legal payment transition."""
    return target in PAYMENT_TRANSITIONS.get(current, set())


def transition_sources(target: PaymentStatus) -> list:
    """All statuses from which ``target`` may be reached."""
    return [source for source, targets in PAYMENT_TRANSITIONS.items() if target in targets]


def generate_payment_reference() -> str:
    return generate_reference("PAY")


class Payment(Base):
    """
    One checkout attempt.

    Invariant: amount_cents == sum(item.amount_cents * item.quantity),
    fixed at creation and never rewritten.
    """

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    payment_gateway_id = Column(Integer, ForeignKey("payment_gateways.id", ondelete="SET NULL"), nullable=True)

    # Internal reference handed to gateways; unique index is the collision guard
    payment_reference = Column(String(32), nullable=False, unique=True, default=generate_payment_reference)
    gateway_transaction_id = Column(String(255), nullable=True, index=True)
    gateway_name = Column(String(255), nullable=True)

    # Amounts in minor units (e.g., 1000 = $10.00)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    gateway_fee_cents = Column(Integer, nullable=False, default=0)
    platform_fee_cents = Column(Integer, nullable=False, default=0)

    status = Column(
        Enum(PaymentStatus, name="paymentstatus"),
        nullable=False,
        default=PaymentStatus.PENDING
    )

    payment_method = Column(String(32), nullable=True)  # card, mobile_money, ecocash, ...
    payment_phone = Column(String(32), nullable=True)  # Normalized MSISDN for mobile money

    failure_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Timestamps
    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    items = relationship(
        "PaymentItem",
        back_populates="payment",
        lazy="selectin",
        order_by="PaymentItem.id",
    )
    gateway_responses = relationship(
        "PaymentGatewayResponse",
        back_populates="payment",
        lazy="selectin",
        order_by="PaymentGatewayResponse.id",
    )

    __table_args__ = (
        Index("idx_payment_user_status", "user_id", "status"),
        Index("idx_payment_event_status", "event_id", "status"),
        Index("idx_payment_status_updated", "status", "updated_at"),
    )

    @property
    def total_fees_cents(self) -> int:
        return (self.gateway_fee_cents or 0) + (self.platform_fee_cents or 0)

    @property
    def net_amount_cents(self) -> int:
        return self.amount_cents - self.total_fees_cents

    @property
    def items_total_cents(self) -> int:
        return sum(item.amount_cents * item.quantity for item in self.items)

    def latest_gateway_response(self, kind: "GatewayResponseKind"):
        """Most recent logged response of ``kind`` (data dict) or None."""
        for entry in reversed(self.gateway_responses):
            if entry.kind == kind:
                return entry.data
        return None

    def __repr__(self):
        return (
            f"<Payment(id={self.id}, reference={self.payment_reference}, "
            f"amount_cents={self.amount_cents}, status={self.status})>"
        )


class PaymentItem(Base):
    """One charged registration line. Immutable once written."""

    __tablename__ = "payment_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    event_registration_id = Column(
        Integer,
        ForeignKey("event_registrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    description = Column(String(500), nullable=False)
    amount_cents = Column(Integer, nullable=False)  # Unit amount
    quantity = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    payment = relationship("Payment", back_populates="items")

    def __repr__(self):
        return (
            f"<PaymentItem(id={self.id}, payment_id={self.payment_id}, "
            f"registration_id={self.event_registration_id}, amount_cents={self.amount_cents})>"
        )


class GatewayResponseKind(str, enum.Enum):
    """Named sub-documents of the gateway response log."""
    INITIALIZATION = "initialization"
    VERIFICATION = "verification"
    WEBHOOK = "webhook"


class PaymentGatewayResponse(Base):
    """
    Append-only log of raw gateway responses for a payment.
    Rows are inserted, never updated or deleted.
    """

    __tablename__ = "payment_gateway_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(Enum(GatewayResponseKind, name="gatewayresponsekind"), nullable=False)
    data = Column(JSONBCompat, nullable=False, default=dict)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)

    payment = relationship("Payment", back_populates="gateway_responses")

    def __repr__(self):
        return f"<PaymentGatewayResponse(payment_id={self.payment_id}, kind={self.kind})>"
