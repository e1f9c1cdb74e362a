"""
Ticket service.
Issues one ticket per paid registration and handles scanning / check-in at the door.
"""
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.event import EventRegistration
from app.models.ticket import Ticket, TicketStatus
from app.utils.clock import SystemClock

logger = logging.getLogger(__name__)


class TicketService:
    """Service for ticket issuance and validation."""

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()

    async def generate_tickets_for_payment(
        self,
        db: AsyncSession,
        payment_id: int,
        registration_ids: List[int],
    ) -> List[Ticket]:
        """
        Issue a ticket for every paid registration.

        Registrations without a ticket get a new one. A ticket cancelled by an
        earlier full refund is reactivated and moved to this payment, since the
        unique index on tickets.event_registration_id allows one row per
        registration. Active or used tickets are left alone.
        Runs inside the caller's transaction and never commits.

        Returns:
            Tickets created or reactivated by this call
        """
        if not registration_ids:
            return []

        existing = await db.execute(
            select(Ticket)
            .where(Ticket.event_registration_id.in_(registration_ids))
            .execution_options(populate_existing=True)
        )
        issued = {ticket.event_registration_id: ticket for ticket in existing.scalars().all()}

        result = await db.execute(
            select(EventRegistration.id, EventRegistration.ticket_number)
            .where(EventRegistration.id.in_(registration_ids))
            .order_by(EventRegistration.id)
        )

        created = []
        now = self.clock.now()
        for registration_id, ticket_number in result.all():
            ticket = issued.get(registration_id)
            if ticket is not None:
                if ticket.status == TicketStatus.CANCELLED:
                    ticket.status = TicketStatus.ACTIVE
                    ticket.payment_id = payment_id
                    ticket.updated_at = now
                    created.append(ticket)
                continue
            ticket = Ticket(
                event_registration_id=registration_id,
                payment_id=payment_id,
                ticket_number=ticket_number,
                status=TicketStatus.ACTIVE,
                created_at=now,
                updated_at=now,
            )
            db.add(ticket)
            created.append(ticket)

        await db.flush()
        return created

    async def cancel_tickets_for_registrations(self, db: AsyncSession, registration_ids: List[int]) -> int:
        """Cancel active tickets (full refund). Runs inside the caller's transaction."""
        if not registration_ids:
            return 0
        result = await db.execute(
            update(Ticket)
            .where(Ticket.event_registration_id.in_(registration_ids))
            .where(Ticket.status == TicketStatus.ACTIVE)
            .values(status=TicketStatus.CANCELLED, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def get(db: AsyncSession, ticket_id: int) -> Optional[Ticket]:
        result = await db.execute(
            select(Ticket).where(Ticket.id == ticket_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_number(db: AsyncSession, ticket_number: str) -> Optional[Ticket]:
        result = await db.execute(
            select(Ticket).where(Ticket.ticket_number == ticket_number).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: int, status: Optional[TicketStatus] = None) -> List[Ticket]:
        """Tickets for registrations the user attends or registered."""
        query = (
            select(Ticket)
            .join(EventRegistration, EventRegistration.id == Ticket.event_registration_id)
            .where((EventRegistration.user_id == user_id) | (EventRegistration.registered_by == user_id))
            .order_by(Ticket.created_at.desc(), Ticket.id.desc())
            .execution_options(populate_existing=True)
        )
        if status is not None:
            query = query.where(Ticket.status == status)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def check_in(self, db: AsyncSession, ticket: Ticket, admin_id: int) -> Ticket:
        """
        Mark a ticket as used.

        Raises:
            ValueError: If the ticket was already used or is not valid
        """
        if ticket.status == TicketStatus.USED:
            raise ValueError(f"Ticket already used at {ticket.used_at.isoformat() if ticket.used_at else 'unknown time'}")
        if not ticket.is_valid():
            raise ValueError(f"Ticket is not valid for check-in (status: {ticket.status.value})")

        now = self.clock.now()
        # Conditional so two scanners cannot both admit the same ticket
        result = await db.execute(
            update(Ticket)
            .where(Ticket.id == ticket.id)
            .where(Ticket.status == TicketStatus.ACTIVE)
            .values(status=TicketStatus.USED, used_at=now, used_by=admin_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.rowcount == 0:
            raise ValueError("Ticket already used")

        logger.info(
            f"Ticket checked in: {ticket.ticket_number}",
            extra={"event": "ticket_checked_in", "ticket_id": ticket.id, "user_id": admin_id}
        )
        refreshed = await db.execute(
            select(Ticket).where(Ticket.id == ticket.id).execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()
