"""
Production logging utility for structured JSON logging.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- payment_id
- payment_reference
- user_id
- gateway
- duration_ms

Usage:
    from app.utils.logging import configure_logging, log_payment_created

    configure_logging('eventpay-api', 'INFO')
    log_payment_created(logger, payment_id=12, payment_reference='PAY-...', user_id=4, gateway='paynow')
"""
import logging
import sys
from typing import Optional, Dict, Any
from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO"):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier (eventpay-api or eventpay-worker)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        if cls._configured:
            return  # Already configured

        cls._service_name = service_name

        # Remove default handlers
        root_logger = logging.getLogger()
        root_logger.handlers = []

        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(level)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        # Console handler (for docker logs)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True


def _build_log_extra(
    event: str,
    payment_id: Optional[int] = None,
    payment_reference: Optional[str] = None,
    user_id: Optional[int] = None,
    gateway: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Build extra fields for structured logging.

    Args:
        event: Event name (mandatory)
        payment_id: Optional payment ID
        payment_reference: Optional payment reference (PAY-...)
        user_id: Optional user ID
        gateway: Optional gateway slug
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields

    Returns:
        Dictionary of extra fields
    """
    extra = {
        "event": event,
        **kwargs
    }

    if payment_id is not None:
        extra["payment_id"] = payment_id
    if payment_reference:
        extra["payment_reference"] = payment_reference
    if user_id is not None:
        extra["user_id"] = user_id
    if gateway:
        extra["gateway"] = gateway
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


def _log_error(logger: logging.Logger, message: str, extra: Dict[str, Any], include_traceback: bool):
    if include_traceback:
        exc_info = sys.exc_info()
        if exc_info[0] is not None:
            logger.error(message, extra=extra, exc_info=exc_info)
            return
    logger.error(message, extra=extra)


# Payment event functions

def log_payment_created(
    logger: logging.Logger,
    payment_id: int,
    payment_reference: str,
    user_id: int,
    gateway: str,
    amount_cents: Optional[int] = None,
    **kwargs
):
    """
    Log payment creation event.

    Args:
        logger: Logger instance
        payment_id: Payment ID (required)
        payment_reference: Payment reference (required)
        user_id: Payer user ID (required)
        gateway: Gateway slug (required)
        amount_cents: Optional amount in minor units
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="payment_created",
        payment_id=payment_id,
        payment_reference=payment_reference,
        user_id=user_id,
        gateway=gateway,
        **kwargs
    )
    if amount_cents is not None:
        extra["amount_cents"] = amount_cents

    logger.info(f"Payment created: {payment_reference}", extra=extra)


def log_payment_initialized(
    logger: logging.Logger,
    payment_id: int,
    payment_reference: str,
    gateway: str,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """Log a payment handed to its gateway (pending -> processing)."""
    extra = _build_log_extra(
        event="payment_initialized",
        payment_id=payment_id,
        payment_reference=payment_reference,
        gateway=gateway,
        duration_ms=duration_ms,
        **kwargs
    )
    logger.info(f"Payment initialized: {payment_reference}", extra=extra)


def log_payment_settled(
    logger: logging.Logger,
    payment_id: int,
    payment_reference: str,
    already_settled: bool,
    gateway: Optional[str] = None,
    tickets_created: Optional[int] = None,
    **kwargs
):
    """
    Log a settlement attempt.

    Args:
        logger: Logger instance
        payment_id: Payment ID (required)
        payment_reference: Payment reference (required)
        already_settled: True when the call was a no-op
        gateway: Optional gateway slug
        tickets_created: Number of tickets issued by this call
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="payment_settled",
        payment_id=payment_id,
        payment_reference=payment_reference,
        gateway=gateway,
        already_settled=already_settled,
        **kwargs
    )
    if tickets_created is not None:
        extra["tickets_created"] = tickets_created

    if already_settled:
        logger.info(f"Payment already settled: {payment_reference}", extra=extra)
    else:
        logger.info(f"Payment settled: {payment_reference}", extra=extra)


def log_payment_failed(
    logger: logging.Logger,
    payment_id: int,
    payment_reference: str,
    status: str,
    reason: Optional[str] = None,
    gateway: Optional[str] = None,
    include_traceback: bool = False,
    **kwargs
):
    """Log a payment moving to failed or cancelled."""
    extra = _build_log_extra(
        event="payment_failed",
        payment_id=payment_id,
        payment_reference=payment_reference,
        gateway=gateway,
        status=status,
        **kwargs
    )
    if reason:
        extra["reason"] = str(reason)

    message = f"Payment {status}: {payment_reference}"
    if reason:
        message += f" - {reason}"

    _log_error(logger, message, extra, include_traceback)


# Gateway event functions

def log_gateway_request(
    logger: logging.Logger,
    gateway: str,
    operation: str,
    duration_ms: Optional[float] = None,
    payment_reference: Optional[str] = None,
    **kwargs
):
    """
    Log payment gateway request event.

    Args:
        logger: Logger instance
        gateway: Gateway slug (stripe, paynow, smile-and-pay) (required)
        operation: Operation name (initialize, verify, refund, webhook) (required)
        duration_ms: Optional duration in milliseconds
        payment_reference: Optional payment reference
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="gateway_request",
        payment_reference=payment_reference,
        gateway=gateway,
        duration_ms=duration_ms,
        operation=operation,
        **kwargs
    )

    logger.info(f"Gateway request: {gateway}.{operation}", extra=extra)


def log_gateway_failure(
    logger: logging.Logger,
    gateway: str,
    operation: str,
    error: str,
    duration_ms: Optional[float] = None,
    payment_reference: Optional[str] = None,
    include_traceback: bool = False,
    **kwargs
):
    """
    Log payment gateway failure event.

    Stack traces are off by default; provider errors carry their own message.
    """
    extra = _build_log_extra(
        event="gateway_failure",
        payment_reference=payment_reference,
        gateway=gateway,
        duration_ms=duration_ms,
        operation=operation,
        error=str(error),
        **kwargs
    )

    _log_error(logger, f"Gateway failure: {gateway}.{operation} - {error}", extra, include_traceback)


# Webhook event functions

def log_webhook_processed(
    logger: logging.Logger,
    gateway: str,
    webhook_log_id: int,
    event_type: Optional[str] = None,
    payment_id: Optional[int] = None,
    duplicate: bool = False,
    **kwargs
):
    """Log a webhook that was processed (or recognized as a duplicate)."""
    extra = _build_log_extra(
        event="webhook_processed",
        payment_id=payment_id,
        gateway=gateway,
        webhook_log_id=webhook_log_id,
        duplicate=duplicate,
        **kwargs
    )
    if event_type:
        extra["event_type"] = event_type

    logger.info(f"Webhook processed: {gateway} #{webhook_log_id}", extra=extra)


def log_webhook_failed(
    logger: logging.Logger,
    gateway: str,
    webhook_log_id: int,
    error: str,
    include_traceback: bool = True,
    **kwargs
):
    """Log a webhook that could not be processed."""
    extra = _build_log_extra(
        event="webhook_failed",
        gateway=gateway,
        webhook_log_id=webhook_log_id,
        error=str(error),
        **kwargs
    )

    _log_error(logger, f"Webhook failed: {gateway} #{webhook_log_id} - {error}", extra, include_traceback)


# Refund event functions

def log_refund_processed(
    logger: logging.Logger,
    refund_id: int,
    payment_id: int,
    amount_cents: int,
    status: str,
    gateway: Optional[str] = None,
    user_id: Optional[int] = None,
    **kwargs
):
    """Log the outcome of a refund request."""
    extra = _build_log_extra(
        event="refund_processed",
        payment_id=payment_id,
        user_id=user_id,
        gateway=gateway,
        refund_id=refund_id,
        amount_cents=amount_cents,
        status=status,
        **kwargs
    )

    logger.info(f"Refund {status}: #{refund_id} for payment {payment_id}", extra=extra)


def configure_logging(service_name: str, log_level: str = "INFO"):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level)
