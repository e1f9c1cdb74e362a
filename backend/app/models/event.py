"""
Event and registration models.

These belong to the event-management side of the platform; payments only
need the price of an event and the lifecycle of its registrations.
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Enum, Index
from sqlalchemy.orm import relationship
import enum

from app.models.base import Base, generate_reference, utcnow


class Event(Base):
    """An event people register for. Paid events carry a per-registration price."""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    is_paid = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    registrations = relationship("EventRegistration", back_populates="event")

    def __repr__(self):
        return f"<Event(id={self.id}, name={self.name}, price_cents={self.price_cents})>"


class RegistrationStatus(str, enum.Enum):
    """Registration lifecycle. Confirmation happens on payment settlement."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


def generate_ticket_number() -> str:
    return generate_reference("TKT")


class EventRegistration(Base):
    """
    One attendee registered for an event.

    ``registered_by`` is set when a user registers someone else (group
    registrations); both the attendee user and the registrant may pay.
    """

    __tablename__ = "event_registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    registered_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    status = Column(
        Enum(RegistrationStatus, name="registrationstatus"),
        nullable=False,
        default=RegistrationStatus.PENDING
    )

    attendee_name = Column(String(255), nullable=False)
    attendee_email = Column(String(255), nullable=True)

    # Assigned at creation, reused as the ticket number once paid
    ticket_number = Column(String(32), nullable=False, unique=True, default=generate_ticket_number)

    registered_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    event = relationship("Event", back_populates="registrations")

    __table_args__ = (
        Index("idx_registration_event_status", "event_id", "status"),
    )

    def __repr__(self):
        return f"<EventRegistration(id={self.id}, event_id={self.event_id}, status={self.status})>"
