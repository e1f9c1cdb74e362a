"""
Payment gateway adapters.
Provides a unified interface over Stripe, Paynow and Smile&Pay.
"""
from app.gateways.base import PaymentGatewayAdapter, GatewayConfig, GatewayOutcome
from app.gateways.registry import GatewayRegistry, default_registry

__all__ = ["PaymentGatewayAdapter", "GatewayConfig", "GatewayOutcome", "GatewayRegistry", "default_registry"]
