"""
Payment endpoints: checkout, status polling, verification and refunds.
All endpoints require Firebase JWT authentication; refunds require an admin.
"""
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_admin
from app.database import get_db
from app.exceptions import (
    GatewayError,
    InvalidRegistrationSet,
    InvalidStateTransition,
    PaymentNotFound,
    PaymentValidationError,
)
from app.gateways.base import InitOptions
from app.models.event import Event, EventRegistration
from app.models.payment import Payment, PaymentStatus
from app.models.user import User
from app.schemas.payment import (
    MOBILE_METHODS,
    OtpConfirmRequest,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatusResponse,
    PaymentVerifyResponse,
    RefundRequest,
    RefundResponse,
)
from app.services.payment_ledger import PaymentLedger
from app.services.settlement_service import SettlementService, get_settlement_service
from app.utils.metrics import errors_total
from app.utils.phone import normalize_msisdn

logger = logging.getLogger(__name__)

router = APIRouter()


def _validation_error(e: PaymentValidationError) -> HTTPException:
    detail = {"message": e.message}
    if isinstance(e, InvalidRegistrationSet):
        if e.invalid_registration_ids:
            detail["invalid_registration_ids"] = e.invalid_registration_ids
        if e.paid_registration_ids:
            detail["paid_registration_ids"] = e.paid_registration_ids
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


def _gateway_error_response(e: GatewayError, message: str) -> JSONResponse:
    errors_total.labels(error_type=e.__class__.__name__).inc()
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": message, "error": e.message},
    )


async def _get_visible_payment(db: AsyncSession, settlement: SettlementService, payment_id: int, user: User) -> Payment:
    """Load a payment the caller owns (admins see everything)."""
    try:
        payment = await settlement.get_payment(db, payment_id)
    except PaymentNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    if payment.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to access this payment")
    return payment


@router.post("/initiate", response_model=PaymentInitiateResponse)
async def initiate_payment(
    request: PaymentInitiateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """
    Create a payment for one or more registrations and hand it to the gateway.

    Returns gateway_data for the client: a redirect URL for hosted checkouts,
    instructions / poll info for mobile money, a payment code for InnBucks.
    """
    start_time = time.time()

    result = await db.execute(
        select(Event)
        .join(EventRegistration, EventRegistration.event_id == Event.id)
        .where(EventRegistration.id.in_(request.registration_ids))
        .distinct()
    )
    events = result.scalars().all()
    if not events:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "No valid registrations found", "invalid_registration_ids": request.registration_ids},
        )
    if len(events) > 1:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "All registrations must belong to the same event"},
        )
    event = events[0]

    phone = None
    if request.payment_phone:
        try:
            phone = normalize_msisdn(request.payment_phone)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={"message": str(e)})

    ledger = PaymentLedger(clock=settlement.clock)
    try:
        payment = await ledger.create_payment(
            db,
            event=event,
            payer=current_user,
            registration_ids=request.registration_ids,
            gateway_slug=request.payment_gateway,
            payment_method=request.payment_method,
            payment_phone=phone,
        )
    except PaymentValidationError as e:
        raise _validation_error(e)

    payment_id = payment.id
    options = InitOptions(
        return_url=request.return_url,
        cancel_url=request.cancel_url,
        payment_method=request.payment_method,
        phone=phone if request.payment_method in MOBILE_METHODS or phone else None,
        extra=request.extra,
    )

    try:
        init_result = await settlement.initiate(db, payment, options)
    except PaymentValidationError as e:
        raise _validation_error(e)
    except GatewayError as e:
        logger.error(
            f"Payment initialization failed: {e.message}",
            extra={
                "event": "payment_initiate_failed",
                "payment_id": payment_id,
                "gateway": request.payment_gateway,
                "duration_ms": (time.time() - start_time) * 1000,
            }
        )
        return _gateway_error_response(e, "Failed to initialize payment")

    payment = await settlement.get_payment(db, payment_id)
    return PaymentInitiateResponse(
        message="Payment initialized",
        payment=PaymentResponse.model_validate(payment),
        gateway_data=init_result.gateway_data,
    )


@router.get("", response_model=PaymentListResponse)
async def list_payments(
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List the caller's payments, newest first."""
    query = select(Payment).where(Payment.user_id == current_user.id)
    count_query = select(func.count(Payment.id)).where(Payment.user_id == current_user.id)
    if status_filter is not None:
        query = query.where(Payment.status == status_filter)
        count_query = count_query.where(Payment.status == status_filter)

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).offset(offset)
    )
    payments = result.scalars().all()
    return PaymentListResponse(
        payments=[PaymentResponse.model_validate(p) for p in payments],
        total=total,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Get a payment with its items."""
    payment = await _get_visible_payment(db, settlement, payment_id, current_user)
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}/status", response_model=PaymentStatusResponse)
async def get_payment_status(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Lightweight status for client polling. Never calls the gateway."""
    payment = await _get_visible_payment(db, settlement, payment_id, current_user)
    return PaymentStatusResponse(
        id=payment.id,
        payment_reference=payment.payment_reference,
        status=payment.status,
        paid_at=payment.paid_at,
        failure_reason=payment.failure_reason,
        can_retry=payment.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED),
    )


@router.post("/{payment_id}/verify", response_model=PaymentVerifyResponse)
async def verify_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """
    Ask the gateway for the payment status and apply it.
    Used when the payer returns from a hosted checkout or while polling mobile money.
    """
    payment = await _get_visible_payment(db, settlement, payment_id, current_user)
    try:
        outcome = await settlement.verify(db, payment)
    except PaymentValidationError as e:
        raise _validation_error(e)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except GatewayError as e:
        return _gateway_error_response(e, "Failed to verify payment")

    if outcome.already_settled:
        message = "Payment already completed"
    elif outcome.payment.status == PaymentStatus.COMPLETED:
        message = "Payment completed"
    else:
        message = f"Payment is {outcome.payment.status.value}"

    return PaymentVerifyResponse(
        message=message,
        payment=PaymentResponse.model_validate(outcome.payment),
        gateway_status=outcome.gateway_status.value if outcome.gateway_status else None,
        already_settled=outcome.already_settled,
    )


@router.post("/{payment_id}/confirm-otp")
async def confirm_payment_otp(
    request: OtpConfirmRequest,
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Confirm a two-step wallet payment with the OTP sent to the payer."""
    payment = await _get_visible_payment(db, settlement, payment_id, current_user)

    phone = None
    if request.payment_phone:
        try:
            phone = normalize_msisdn(request.payment_phone)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={"message": str(e)})

    try:
        response = await settlement.confirm_otp(db, payment, request.otp, phone)
    except PaymentValidationError as e:
        raise _validation_error(e)
    except GatewayError as e:
        return _gateway_error_response(e, "Failed to confirm payment")

    return {"message": "Confirmation submitted", "gateway_response": response}


@router.post("/{payment_id}/refund", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def refund_payment(
    request: RefundRequest,
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Refund all or part of a completed payment (admin only)."""
    try:
        payment = await settlement.get_payment(db, payment_id)
    except PaymentNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    amount_cents = request.amount_cents
    if amount_cents is None:
        amount_cents = await settlement.refundable_amount(db, payment)

    try:
        refund = await settlement.process_refund(
            db,
            payment,
            amount_cents=amount_cents,
            reason=request.reason,
            actor=admin,
            admin_notes=request.admin_notes,
        )
    except PaymentValidationError as e:
        raise _validation_error(e)
    except GatewayError as e:
        return _gateway_error_response(e, "Failed to process refund")

    return RefundResponse.model_validate(refund)
