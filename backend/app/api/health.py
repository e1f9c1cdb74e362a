"""
Health check endpoint.
Verifies database and Redis connectivity and reports configured gateways.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text
import redis
from app.database import get_db
from app.config import settings
from app.gateways.registry import default_registry
from app.models.payment_gateway import PaymentGateway

router = APIRouter()


def check_redis() -> str:
    r = redis.from_url(settings.redis_url, socket_connect_timeout=2)
    r.ping()
    return "connected"


@router.get("")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.
    Returns status of database and Redis connections and the gateway setup.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "redis": "unknown",
        "adapters": default_registry.slugs(),
    }

    try:
        await db.execute(text("SELECT 1"))
        active = await db.execute(
            select(func.count(PaymentGateway.id)).where(PaymentGateway.is_active.is_(True))
        )
        health_status["database"] = "connected"
        health_status["active_gateways"] = active.scalar_one()
    except Exception as e:
        health_status["database"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    try:
        health_status["redis"] = check_redis()
    except Exception as e:
        health_status["redis"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status
