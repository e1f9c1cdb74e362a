"""
Ticket endpoints: the caller's tickets plus door scanning / check-in for admins.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_admin
from app.database import get_db
from app.models.event import EventRegistration
from app.models.ticket import Ticket, TicketStatus
from app.models.user import User
from app.schemas.ticket import TicketResponse, TicketScanRequest, TicketScanResponse
from app.services.settlement_service import SettlementService, get_settlement_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _owns(ticket: Ticket, user: User) -> bool:
    registration: Optional[EventRegistration] = ticket.registration
    return registration is not None and user.id in (registration.user_id, registration.registered_by)


@router.get("", response_model=List[TicketResponse])
async def list_tickets(
    status_filter: Optional[TicketStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Tickets for registrations the caller attends or registered."""
    tickets = await settlement.ticket_service.list_for_user(db, current_user.id, status_filter)
    return [TicketResponse.model_validate(t) for t in tickets]


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(
    ticket_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settlement: SettlementService = Depends(get_settlement_service),
):
    ticket = await settlement.ticket_service.get(db, ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    if not _owns(ticket, current_user) and not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to access this ticket")
    return TicketResponse.model_validate(ticket)


@router.post("/scan", response_model=TicketScanResponse)
async def scan_ticket(
    request: TicketScanRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Look a ticket up by number and report whether it admits entry. Does not check in."""
    ticket = await settlement.ticket_service.get_by_number(db, request.ticket_number.strip())
    if ticket is None:
        return TicketScanResponse(valid=False, message="Ticket not found")

    if ticket.status == TicketStatus.USED:
        return TicketScanResponse(
            valid=False,
            message="Ticket already used",
            already_used=True,
            ticket=TicketResponse.model_validate(ticket),
        )
    if not ticket.is_valid():
        return TicketScanResponse(
            valid=False,
            message=f"Ticket is {ticket.status.value}",
            ticket=TicketResponse.model_validate(ticket),
        )
    return TicketScanResponse(valid=True, message="Ticket is valid", ticket=TicketResponse.model_validate(ticket))


@router.post("/{ticket_id}/check-in", response_model=TicketResponse)
async def check_in_ticket(
    ticket_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Admit the ticket holder. A ticket can only be checked in once."""
    ticket = await settlement.ticket_service.get(db, ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    try:
        ticket = await settlement.ticket_service.check_in(db, ticket, admin.id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return TicketResponse.model_validate(ticket)
