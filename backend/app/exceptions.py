"""
Payment domain exceptions.

Route handlers translate these into HTTP responses:
- PaymentValidationError → 422
- PaymentNotFound → 404
- InvalidStateTransition → 409
- GatewayError → 500
InvalidSignature is only raised while ingesting webhooks and is never surfaced.
"""
from typing import List, Optional


class PaymentError(Exception):
    """Base class for all payment errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PaymentValidationError(PaymentError):
    """Request cannot be turned into a payment (or refund)."""


class InvalidRegistrationSet(PaymentValidationError):
    """Some registrations are missing, belong to another event, or are already paid."""

    def __init__(
        self,
        message: str,
        invalid_registration_ids: Optional[List[int]] = None,
        paid_registration_ids: Optional[List[int]] = None,
    ):
        super().__init__(message)
        self.invalid_registration_ids = invalid_registration_ids or []
        self.paid_registration_ids = paid_registration_ids or []


class GatewayUnavailable(PaymentValidationError):
    """Gateway is missing, inactive, unknown or does not support the currency."""


class InvalidRefundAmount(PaymentValidationError):
    """Refund amount is not positive, exceeds the refundable amount, or payment is not refundable."""


class PaymentNotFound(PaymentError):
    """Payment does not exist."""


class InvalidStateTransition(PaymentError):
    """Requested status change is not allowed from the payment's current status."""

    def __init__(self, message: str, current_status=None, target_status=None):
        super().__init__(message)
        self.current_status = current_status
        self.target_status = target_status


class InvalidSignature(PaymentError):
    """Webhook payload could not be authenticated."""


class GatewayError(PaymentError):
    """Provider call failed."""

    def __init__(self, message: str, gateway: Optional[str] = None):
        super().__init__(message)
        self.gateway = gateway


class GatewayTimeout(GatewayError):
    """Provider did not answer within GATEWAY_TIMEOUT_SECONDS."""


class GatewayInitializationFailed(GatewayError):
    """Provider rejected or failed to initialize the payment."""


class RefundFailed(GatewayError):
    """Provider refund call failed."""
