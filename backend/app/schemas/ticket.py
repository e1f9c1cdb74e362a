"""
Pydantic schemas for ticket endpoints.
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from app.models.ticket import TicketStatus


class TicketResponse(BaseModel):
    """Schema for ticket response."""
    id: int
    event_registration_id: int
    payment_id: Optional[int] = None
    ticket_number: str
    status: TicketStatus
    used_at: Optional[datetime] = None
    used_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TicketScanRequest(BaseModel):
    """Schema for scanning a ticket at the door."""
    ticket_number: str = Field(..., min_length=1)


class TicketScanResponse(BaseModel):
    """Schema for scan result."""
    valid: bool
    message: str
    already_used: bool = False
    ticket: Optional[TicketResponse] = None
