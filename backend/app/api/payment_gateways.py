"""
Payment gateway configuration endpoints.
Payers see active gateways; admins register and update them.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import require_admin
from app.database import get_db
from app.gateways.registry import default_registry
from app.models.payment_gateway import PaymentGateway
from app.models.user import User
from app.schemas.gateway import (
    PaymentGatewayAdmin,
    PaymentGatewayCreate,
    PaymentGatewayPublic,
    PaymentGatewayUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _admin_view(gateway: PaymentGateway) -> PaymentGatewayAdmin:
    return PaymentGatewayAdmin(
        id=gateway.id,
        name=gateway.name,
        slug=gateway.slug,
        display_order=gateway.display_order,
        supported_currencies=gateway.supported_currencies,
        is_active=gateway.is_active,
        supports_webhooks=gateway.supports_webhooks,
        webhook_url=gateway.webhook_url,
        settings=gateway.settings,
        has_credentials=bool(gateway.credentials),
        has_webhook_secret=bool(gateway.webhook_secret),
    )


@router.get("", response_model=List[PaymentGatewayPublic])
async def list_active_gateways(db: AsyncSession = Depends(get_db)):
    """Active gateways in display order. Public: shown on the checkout page."""
    result = await db.execute(
        select(PaymentGateway)
        .where(PaymentGateway.is_active.is_(True))
        .order_by(PaymentGateway.display_order, PaymentGateway.id)
    )
    return [PaymentGatewayPublic.model_validate(g) for g in result.scalars().all()]


@router.get("/admin", response_model=List[PaymentGatewayAdmin])
async def list_all_gateways(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    result = await db.execute(select(PaymentGateway).order_by(PaymentGateway.display_order, PaymentGateway.id))
    return [_admin_view(g) for g in result.scalars().all()]


@router.post("", response_model=PaymentGatewayAdmin, status_code=status.HTTP_201_CREATED)
async def create_gateway(
    request: PaymentGatewayCreate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Register a gateway. The slug must match a known adapter."""
    if not default_registry.supports(request.slug):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"No adapter for gateway '{request.slug}'. Known: {', '.join(default_registry.slugs())}",
        )

    gateway = PaymentGateway(
        name=request.name,
        slug=request.slug,
        is_active=request.is_active,
        display_order=request.display_order,
        credentials=request.credentials,
        settings=request.settings,
        supports_webhooks=request.supports_webhooks,
        webhook_url=request.webhook_url,
        webhook_secret=request.webhook_secret,
        supported_currencies=[c.upper() for c in request.supported_currencies],
    )
    db.add(gateway)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Gateway '{request.slug}' already exists")
    await db.refresh(gateway)

    logger.info(
        f"Payment gateway registered: {gateway.slug}",
        extra={"event": "gateway_created", "gateway": gateway.slug, "user_id": admin.id}
    )
    return _admin_view(gateway)


@router.get("/{gateway_id}", response_model=PaymentGatewayAdmin)
async def get_gateway(
    gateway_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    gateway = await db.get(PaymentGateway, gateway_id)
    if gateway is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment gateway not found")
    return _admin_view(gateway)


@router.patch("/{gateway_id}", response_model=PaymentGatewayAdmin)
async def update_gateway(
    gateway_id: int,
    request: PaymentGatewayUpdate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Update a gateway; credentials and webhook secret are replaced, never merged."""
    gateway = await db.get(PaymentGateway, gateway_id)
    if gateway is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment gateway not found")

    changes = request.model_dump(exclude_unset=True)
    if "supported_currencies" in changes and changes["supported_currencies"] is not None:
        changes["supported_currencies"] = [c.upper() for c in changes["supported_currencies"]]
    for field_name, value in changes.items():
        setattr(gateway, field_name, value)

    await db.commit()
    await db.refresh(gateway)

    logger.info(
        f"Payment gateway updated: {gateway.slug}",
        extra={"event": "gateway_updated", "gateway": gateway.slug, "user_id": admin.id, "fields": sorted(changes)}
    )
    return _admin_view(gateway)


@router.delete("/{gateway_id}", response_model=PaymentGatewayAdmin)
async def deactivate_gateway(
    gateway_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """
    Deactivate a gateway.

    Rows are never deleted: payments and webhook logs keep pointing at them.
    """
    gateway = await db.get(PaymentGateway, gateway_id)
    if gateway is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment gateway not found")

    gateway.is_active = False
    await db.commit()
    await db.refresh(gateway)

    logger.info(
        f"Payment gateway deactivated: {gateway.slug}",
        extra={"event": "gateway_deactivated", "gateway": gateway.slug, "user_id": admin.id}
    )
    return _admin_view(gateway)
