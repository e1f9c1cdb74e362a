"""
Refund ledger for admins.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import require_admin
from app.database import get_db
from app.models.refund import Refund, RefundStatus
from app.models.user import User
from app.schemas.payment import RefundResponse

router = APIRouter()


@router.get("", response_model=List[RefundResponse])
async def list_refunds(
    status_filter: Optional[RefundStatus] = Query(None, alias="status"),
    payment_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """List refunds, newest first (admin only)."""
    query = select(Refund)
    if status_filter is not None:
        query = query.where(Refund.status == status_filter)
    if payment_id is not None:
        query = query.where(Refund.payment_id == payment_id)
    result = await db.execute(
        query.order_by(Refund.created_at.desc(), Refund.id.desc()).limit(limit).offset(offset)
    )
    return [RefundResponse.model_validate(r) for r in result.scalars().all()]
