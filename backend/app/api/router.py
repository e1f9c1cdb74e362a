"""
API router aggregator.
Includes all route modules.
"""
from fastapi import APIRouter
from app.api import health, payments, payment_gateways, refunds, tickets, webhooks

api_router = APIRouter()

# Include route modules
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(payment_gateways.router, prefix="/payment-gateways", tags=["payment-gateways"])
api_router.include_router(refunds.router, prefix="/refunds", tags=["refunds"])
api_router.include_router(tickets.router, prefix="/tickets", tags=["tickets"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
