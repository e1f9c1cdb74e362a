"""
Gateway registry.
Maps a gateway slug to the adapter factory that serves it.
"""
import logging
from typing import Callable, Dict, List

from app.exceptions import GatewayUnavailable
from app.gateways.base import GatewayConfig, PaymentGatewayAdapter
from app.gateways.paynow import PaynowGateway
from app.gateways.smilepay import SmilePayGateway
from app.gateways.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[GatewayConfig], PaymentGatewayAdapter]


class GatewayRegistry:
    """Static slug -> adapter factory map."""

    def __init__(self):
        self._factories: Dict[str, AdapterFactory] = {}

    def register(self, slug: str, factory: AdapterFactory):
        self._factories[slug] = factory

    def slugs(self) -> List[str]:
        return sorted(self._factories)

    def supports(self, slug: str) -> bool:
        return slug in self._factories

    def resolve(self, gateway) -> PaymentGatewayAdapter:
        """
        Build the adapter for a payment_gateways row.

        Raises:
            GatewayUnavailable: If no adapter is registered for the slug
        """
        factory = self._factories.get(gateway.slug)
        if factory is None:
            logger.error(f"No adapter registered for gateway: {gateway.slug}")
            raise GatewayUnavailable(
                f"Unsupported payment gateway: {gateway.slug}. "
                f"Must be one of: {', '.join(self.slugs())}"
            )
        return factory(GatewayConfig.from_model(gateway))


def build_default_registry() -> GatewayRegistry:
    registry = GatewayRegistry()
    registry.register("stripe", StripeGateway)
    registry.register("paynow", PaynowGateway)
    registry.register("smile-and-pay", SmilePayGateway)
    return registry


default_registry = build_default_registry()
