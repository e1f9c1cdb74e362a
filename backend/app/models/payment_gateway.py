"""
Payment gateway configuration model.
Credentials are encrypted at rest; everything else is plain configuration.
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.models.base import Base, utcnow
from app.models.types import EncryptedJSON, JSONBCompat


class PaymentGateway(Base):
    """A configured payment provider, addressed by its slug (stripe, paynow, smile-and-pay)."""

    __tablename__ = "payment_gateways"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(64), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)

    credentials = Column(EncryptedJSON, nullable=True)  # API keys, integration ids/keys
    settings = Column(JSONBCompat, nullable=True)  # Non-secret provider options

    supports_webhooks = Column(Boolean, nullable=False, default=True)
    webhook_url = Column(String(500), nullable=True)
    webhook_secret = Column(Text, nullable=True)
    supported_currencies = Column(JSONBCompat, nullable=True)  # e.g. ["USD", "ZIG"]; empty = any

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def supports_currency(self, currency: str) -> bool:
        if not self.supported_currencies:
            return True
        wanted = (currency or "").upper()
        return any(str(code).upper() == wanted for code in self.supported_currencies)

    def __repr__(self):
        return f"<PaymentGateway(id={self.id}, slug={self.slug}, is_active={self.is_active})>"
