"""
Ticket model.
One ticket per paid registration; the unique index on event_registration_id
is what keeps concurrent settlements from issuing two.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
import enum

from app.models.base import Base, utcnow
from app.models.event import RegistrationStatus


class TicketStatus(str, enum.Enum):
    """Status of a ticket."""
    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Ticket(Base):
    """Admission ticket for a paid registration."""

    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_registration_id = Column(
        Integer,
        ForeignKey("event_registrations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True, index=True)
    ticket_number = Column(String(32), nullable=False, unique=True)

    status = Column(
        Enum(TicketStatus, name="ticketstatus"),
        nullable=False,
        default=TicketStatus.ACTIVE
    )

    qr_code_path = Column(String(500), nullable=True)
    pdf_path = Column(String(500), nullable=True)

    used_at = Column(DateTime, nullable=True)
    used_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    registration = relationship("EventRegistration", lazy="selectin")

    def is_valid(self) -> bool:
        return (
            self.status == TicketStatus.ACTIVE
            and self.registration is not None
            and self.registration.status == RegistrationStatus.CONFIRMED
        )

    def __repr__(self):
        return f"<Ticket(id={self.id}, ticket_number={self.ticket_number}, status={self.status})>"
