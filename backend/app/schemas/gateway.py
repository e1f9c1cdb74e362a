"""
Pydantic schemas for payment gateway configuration.
Credentials are write-only: they are accepted on create/update and never returned.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class PaymentGatewayPublic(BaseModel):
    """Active gateway as shown to payers."""
    id: int
    name: str
    slug: str
    display_order: int
    supported_currencies: Optional[List[str]] = None

    class Config:
        from_attributes = True


class PaymentGatewayAdmin(PaymentGatewayPublic):
    """Gateway as shown to admins (still without secrets)."""
    is_active: bool
    supports_webhooks: bool
    webhook_url: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    has_credentials: bool = False
    has_webhook_secret: bool = False


class PaymentGatewayCreate(BaseModel):
    """Schema for registering a gateway."""
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9-]+$")
    is_active: bool = True
    display_order: int = 0
    credentials: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    supports_webhooks: bool = True
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    supported_currencies: List[str] = Field(default_factory=list)


class PaymentGatewayUpdate(BaseModel):
    """Schema for updating a gateway; omitted fields are left unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    is_active: Optional[bool] = None
    display_order: Optional[int] = None
    credentials: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    supports_webhooks: Optional[bool] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    supported_currencies: Optional[List[str]] = None
