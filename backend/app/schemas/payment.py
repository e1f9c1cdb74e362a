"""
Pydantic schemas for payment endpoints.
"""
from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from app.models.payment import PaymentStatus
from app.models.refund import RefundStatus

PaymentMethod = Literal["card", "mobile_money", "bank_transfer", "innbucks", "ecocash", "omari"]

# Methods that push a prompt to the payer's phone
MOBILE_METHODS = ("mobile_money", "ecocash", "omari")


class PaymentInitiateRequest(BaseModel):
    """Schema for starting a checkout."""
    registration_ids: List[int] = Field(..., min_length=1, description="Registrations to pay for (same event)")
    payment_gateway: str = Field(..., description="Gateway slug (stripe, paynow, smile-and-pay)")
    payment_method: PaymentMethod = Field("card", description="How the payer will pay")
    payment_phone: Optional[str] = Field(None, description="Phone number, required for mobile money")
    return_url: Optional[str] = Field(None, description="Where the gateway sends the payer afterwards")
    cancel_url: Optional[str] = Field(None, description="Where the gateway sends the payer on cancel")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Provider-specific fields")

    @model_validator(mode="after")
    def require_phone_for_mobile(self):
        if self.payment_method in MOBILE_METHODS and not (self.payment_phone or "").strip():
            raise ValueError(f"payment_phone is required for {self.payment_method}")
        return self


class PaymentItemResponse(BaseModel):
    """Schema for a payment line."""
    id: int
    event_registration_id: int
    description: str
    amount_cents: int
    quantity: int

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    """Schema for payment response."""
    id: int
    payment_reference: str
    event_id: int
    user_id: int
    gateway_name: Optional[str] = None
    amount_cents: int
    currency: str
    gateway_fee_cents: int
    platform_fee_cents: int
    total_fees_cents: int
    net_amount_cents: int
    status: PaymentStatus
    payment_method: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[PaymentItemResponse] = []

    class Config:
        from_attributes = True


class PaymentInitiateResponse(BaseModel):
    """Schema for a started checkout."""
    message: str
    payment: PaymentResponse
    gateway_data: Dict[str, Any]


class PaymentStatusResponse(BaseModel):
    """Lightweight status for client polling."""
    id: int
    payment_reference: str
    status: PaymentStatus
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    can_retry: bool


class PaymentVerifyResponse(BaseModel):
    """Schema for a verification result."""
    message: str
    payment: PaymentResponse
    gateway_status: Optional[str] = None
    already_settled: bool


class PaymentListResponse(BaseModel):
    """Schema for the caller's payments."""
    payments: List[PaymentResponse]
    total: int


class OtpConfirmRequest(BaseModel):
    """Schema for confirming a two-step wallet payment."""
    otp: str = Field(..., min_length=3, max_length=12)
    payment_phone: Optional[str] = None


class RefundRequest(BaseModel):
    """Schema for requesting a refund (admin)."""
    amount_cents: Optional[int] = Field(None, gt=0, description="Defaults to the remaining refundable amount")
    reason: str = Field(..., min_length=1, max_length=1000)
    admin_notes: Optional[str] = None


class RefundResponse(BaseModel):
    """Schema for refund response."""
    id: int
    payment_id: int
    refund_reference: str
    gateway_refund_id: Optional[str] = None
    amount_cents: int
    currency: str
    status: RefundStatus
    reason: Optional[str] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
