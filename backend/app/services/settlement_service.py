"""
Settlement service: the payment state machine.

Every status change is a conditional UPDATE guarded by the legal source
statuses of the target (see PAYMENT_TRANSITIONS). An affected row count of 0
means another request changed the payment first; callers re-read and decide.

Gateway calls never run inside an open database transaction:
call gateway -> open transaction -> re-check -> apply -> commit.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    GatewayError,
    GatewayInitializationFailed,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidRefundAmount,
    InvalidStateTransition,
    PaymentError,
    PaymentNotFound,
    PaymentValidationError,
    RefundFailed,
)
from app.gateways.base import GatewayOutcome, InitOptions, InitResult, PaymentIntent, ProviderRefundStatus
from app.gateways.registry import default_registry
from app.models.event import Event, EventRegistration, RegistrationStatus
from app.models.payment import (
    REFUNDABLE_STATUSES,
    SETTLED_STATUSES,
    GatewayResponseKind,
    Payment,
    PaymentGatewayResponse,
    PaymentItem,
    PaymentStatus,
    transition_sources,
)
from app.models.payment_gateway import PaymentGateway
from app.models.refund import RESERVING_REFUND_STATUSES, Refund, RefundStatus
from app.models.user import User
from app.services.ticket_service import TicketService
from app.utils.clock import SystemClock
from app.utils.logging import (
    log_payment_failed,
    log_payment_initialized,
    log_payment_settled,
    log_refund_processed,
)
from app.utils.metrics import (
    payment_settlement_noops_total,
    payments_failed_total,
    payments_settled_total,
    reconciled_payments_total,
    refunds_total,
)

logger = logging.getLogger(__name__)


@dataclass
class SettlementOutcome:
    """Result of mark_as_paid. already_settled=True means this call was a no-op."""
    payment: Payment
    already_settled: bool
    tickets_created: int = 0


@dataclass
class VerificationOutcome:
    payment: Payment
    gateway_status: Optional[GatewayOutcome]
    gateway_called: bool
    already_settled: bool = False


@dataclass
class ReconciliationReport:
    checked: int = 0
    settled: int = 0
    failed: int = 0
    still_processing: int = 0
    errors: List[int] = field(default_factory=list)


class SettlementService:
    """Owns every Payment status change after creation."""

    def __init__(self, registry=None, clock=None, ticket_service: Optional[TicketService] = None):
        self.registry = registry or default_registry
        self.clock = clock or SystemClock()
        self.ticket_service = ticket_service or TicketService(clock=self.clock)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def get_payment(db: AsyncSession, payment_id: int) -> Payment:
        """
        Load a payment with fresh state.

        Raises:
            PaymentNotFound: If the payment does not exist
        """
        result = await db.execute(
            select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return payment

    async def _transition(self, db: AsyncSession, payment_id: int, target: PaymentStatus, **values) -> bool:
        """Conditional status change. Returns False when the payment was not in a legal source status."""
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.status.in_(transition_sources(target)))
            .values(status=target, updated_at=self.clock.now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _resolve_adapter(self, db: AsyncSession, payment: Payment):
        gateway = None
        if payment.payment_gateway_id is not None:
            gateway = await db.get(PaymentGateway, payment.payment_gateway_id)
        if gateway is None or not gateway.is_active:
            raise GatewayUnavailable(f"Payment gateway for payment {payment.payment_reference} is not available")
        return self.registry.resolve(gateway)

    @staticmethod
    async def _build_intent(db: AsyncSession, payment: Payment) -> PaymentIntent:
        event = await db.get(Event, payment.event_id)
        payer = await db.get(User, payment.user_id)
        return PaymentIntent(
            payment_id=payment.id,
            reference=payment.payment_reference,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            description=f"Payment for {event.name}" if event else "Event Registration",
            payer_email=payer.email if payer else None,
            payer_name=payer.name if payer else None,
            payment_method=payment.payment_method,
            payment_phone=payment.payment_phone,
            transaction_id=payment.gateway_transaction_id,
            initialization=payment.latest_gateway_response(GatewayResponseKind.INITIALIZATION) or {},
        )

    def append_response(self, db: AsyncSession, payment_id: int, kind: GatewayResponseKind, data: Dict[str, Any]):
        """Add an entry to the append-only gateway response log (caller commits)."""
        db.add(PaymentGatewayResponse(payment_id=payment_id, kind=kind, data=data, recorded_at=self.clock.now()))

    @staticmethod
    async def _registration_ids(db: AsyncSession, payment_id: int) -> List[int]:
        result = await db.execute(
            select(PaymentItem.event_registration_id)
            .where(PaymentItem.payment_id == payment_id)
            .order_by(PaymentItem.id)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate(self, db: AsyncSession, payment: Payment, options: InitOptions) -> InitResult:
        """
        Hand a pending payment to its gateway.

        On success the payment moves to processing and the gateway reply is
        logged as an initialization entry. On failure the payment is marked
        failed before the error is re-raised.

        Raises:
            InvalidStateTransition: If the payment is not pending
            GatewayUnavailable: If the gateway is missing, inactive or unknown
            GatewayError: If the provider call fails (payment already failed)
        """
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateTransition(
                f"Payment {payment.payment_reference} cannot be initiated from status {payment.status.value}",
                current_status=payment.status,
                target_status=PaymentStatus.PROCESSING,
            )

        adapter = await self._resolve_adapter(db, payment)
        intent = await self._build_intent(db, payment)
        payment_id = payment.id
        reference = payment.payment_reference

        # No transaction may stay open across the provider call
        await db.commit()

        started = time.time()
        try:
            result = await adapter.initialize_payment(intent, options)
        except GatewayError as e:
            await self._mark_failed(db, payment_id, PaymentStatus.FAILED, e.message, adapter.slug, reference)
            raise
        except (ValueError, KeyError) as e:
            # Bad input discovered by the adapter (phone, card fields...)
            await self._mark_failed(db, payment_id, PaymentStatus.FAILED, str(e), adapter.slug, reference)
            raise GatewayInitializationFailed(f"Payment initialization failed: {e}", gateway=adapter.slug) from e

        values = {}
        if options.payment_method:
            values["payment_method"] = options.payment_method
        moved = await self._transition(db, payment_id, PaymentStatus.PROCESSING, **values)
        if not moved:
            await db.rollback()
            current = await self.get_payment(db, payment_id)
            raise InvalidStateTransition(
                f"Payment {reference} changed to {current.status.value} while initializing",
                current_status=current.status,
                target_status=PaymentStatus.PROCESSING,
            )
        self.append_response(
            db,
            payment_id,
            GatewayResponseKind.INITIALIZATION,
            {**result.gateway_data, "raw_response": result.raw_response},
        )
        await db.commit()

        log_payment_initialized(
            logger,
            payment_id=payment_id,
            payment_reference=reference,
            gateway=adapter.slug,
            duration_ms=(time.time() - started) * 1000,
        )
        return result

    async def _mark_failed(
        self,
        db: AsyncSession,
        payment_id: int,
        status: PaymentStatus,
        reason: Optional[str],
        gateway: Optional[str],
        reference: Optional[str],
    ) -> bool:
        moved = await self._transition(
            db,
            payment_id,
            status,
            failure_reason=reason,
            failed_at=self.clock.now(),
        )
        if not moved:
            await db.rollback()
            return False
        await db.commit()
        payments_failed_total.labels(gateway=gateway or "unknown", status=status.value).inc()
        log_payment_failed(
            logger,
            payment_id=payment_id,
            payment_reference=reference,
            status=status.value,
            reason=reason,
            gateway=gateway,
        )
        return True

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def mark_as_paid(
        self,
        db: AsyncSession,
        payment_id: int,
        transaction_id: Optional[str] = None,
    ) -> SettlementOutcome:
        """
        Settle a payment exactly once.

        In one transaction: processing -> completed, confirm every covered
        registration, issue one ticket per registration. Only the caller
        whose conditional update succeeds does the cascade; everyone else
        sees an already settled payment and gets a no-op.

        Raises:
            PaymentNotFound: If the payment does not exist
            InvalidStateTransition: If the payment is pending, failed or cancelled
        """
        now = self.clock.now()
        values = {"paid_at": now}
        if transaction_id:
            values["gateway_transaction_id"] = transaction_id

        try:
            moved = await self._transition(db, payment_id, PaymentStatus.COMPLETED, **values)
            if moved:
                registration_ids = await self._registration_ids(db, payment_id)
                if registration_ids:
                    await db.execute(
                        update(EventRegistration)
                        .where(EventRegistration.id.in_(registration_ids))
                        .values(status=RegistrationStatus.CONFIRMED, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                tickets = await self.ticket_service.generate_tickets_for_payment(db, payment_id, registration_ids)
                await db.commit()
            else:
                await db.rollback()
        except Exception:
            await db.rollback()
            raise

        payment = await self.get_payment(db, payment_id)
        gateway_label = payment.gateway_name or "unknown"

        if not moved:
            if payment.status in SETTLED_STATUSES:
                payment_settlement_noops_total.labels(gateway=gateway_label).inc()
                log_payment_settled(
                    logger,
                    payment_id=payment_id,
                    payment_reference=payment.payment_reference,
                    already_settled=True,
                )
                return SettlementOutcome(payment=payment, already_settled=True)
            raise InvalidStateTransition(
                f"Payment {payment.payment_reference} cannot be completed from status {payment.status.value}",
                current_status=payment.status,
                target_status=PaymentStatus.COMPLETED,
            )

        payments_settled_total.labels(gateway=gateway_label).inc()
        log_payment_settled(
            logger,
            payment_id=payment_id,
            payment_reference=payment.payment_reference,
            already_settled=False,
            gateway=payment.gateway_name,
            tickets_created=len(tickets),
        )
        return SettlementOutcome(payment=payment, already_settled=False, tickets_created=len(tickets))

    async def record_gateway_outcome(
        self,
        db: AsyncSession,
        payment_id: int,
        status: GatewayOutcome,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Apply a provider-reported failure or cancellation.

        Returns:
            True if the payment changed, False if it was already terminal
        """
        if status == GatewayOutcome.FAILED:
            target = PaymentStatus.FAILED
        elif status == GatewayOutcome.CANCELLED:
            target = PaymentStatus.CANCELLED
        else:
            raise ValueError(f"record_gateway_outcome only handles failed/cancelled, got {status}")

        payment = await self.get_payment(db, payment_id)
        gateway = payment.gateway_name
        reference = payment.payment_reference
        await db.commit()

        changed = await self._mark_failed(db, payment_id, target, reason, gateway, reference)
        if not changed:
            logger.info(
                f"Ignoring {target.value} outcome for {reference}: payment already terminal",
                extra={"event": "payment_outcome_ignored", "payment_id": payment_id}
            )
        return changed

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, db: AsyncSession, payment: Payment) -> VerificationOutcome:
        """
        Pull the payment status from the gateway and apply it.

        Settled payments are returned without calling the gateway. A gateway
        timeout leaves the payment processing.
        """
        if payment.status in SETTLED_STATUSES:
            return VerificationOutcome(
                payment=payment,
                gateway_status=GatewayOutcome.COMPLETED,
                gateway_called=False,
                already_settled=True,
            )
        if payment.status != PaymentStatus.PROCESSING:
            # Pending payments were never handed to a gateway; failed ones are never resurrected
            return VerificationOutcome(payment=payment, gateway_status=None, gateway_called=False)

        adapter = await self._resolve_adapter(db, payment)
        intent = await self._build_intent(db, payment)
        payment_id = payment.id
        await db.commit()

        try:
            result = await adapter.verify_payment(intent)
        except GatewayTimeout:
            logger.warning(
                f"Verification of {intent.reference} timed out, leaving it processing",
                extra={"event": "payment_verify_timeout", "payment_id": payment_id, "gateway": adapter.slug}
            )
            payment = await self.get_payment(db, payment_id)
            return VerificationOutcome(payment=payment, gateway_status=GatewayOutcome.PROCESSING, gateway_called=True)

        self.append_response(
            db,
            payment_id,
            GatewayResponseKind.VERIFICATION,
            {
                "status": result.status.value,
                "transaction_id": result.transaction_id,
                "amount_cents": result.amount_cents,
                "raw_response": result.raw_response,
            },
        )
        await db.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.status == GatewayOutcome.COMPLETED:
            if result.amount_cents is not None and result.amount_cents != intent.amount_cents:
                logger.error(
                    f"Amount mismatch for {intent.reference}: gateway reported {result.amount_cents}, "
                    f"expected {intent.amount_cents}",
                    extra={"event": "payment_amount_mismatch", "payment_id": payment_id, "gateway": adapter.slug}
                )
                payment = await self.get_payment(db, payment_id)
                return VerificationOutcome(payment=payment, gateway_status=result.status, gateway_called=True)
            outcome = await self.mark_as_paid(db, payment_id, result.transaction_id)
            return VerificationOutcome(
                payment=outcome.payment,
                gateway_status=result.status,
                gateway_called=True,
                already_settled=outcome.already_settled,
            )

        if result.status in (GatewayOutcome.FAILED, GatewayOutcome.CANCELLED):
            await self.record_gateway_outcome(
                db, payment_id, result.status, f"Gateway reported {result.status.value} on verification"
            )

        payment = await self.get_payment(db, payment_id)
        return VerificationOutcome(payment=payment, gateway_status=result.status, gateway_called=True)

    async def confirm_otp(self, db: AsyncSession, payment: Payment, otp: str, mobile: Optional[str] = None) -> Dict[str, Any]:
        """
        Confirm a two-step wallet payment (O'mari) with the OTP the payer received.

        Raises:
            PaymentValidationError: If the payment is not awaiting an OTP
        """
        if payment.status != PaymentStatus.PROCESSING:
            raise PaymentValidationError(f"Payment {payment.payment_reference} is not awaiting confirmation")
        initialization = payment.latest_gateway_response(GatewayResponseKind.INITIALIZATION) or {}
        if not initialization.get("requires_otp"):
            raise PaymentValidationError(f"Payment {payment.payment_reference} does not require an OTP")

        adapter = await self._resolve_adapter(db, payment)
        if not hasattr(adapter, "confirm_otp"):
            raise PaymentValidationError(f"Gateway {adapter.slug} does not support OTP confirmation")

        payment_id = payment.id
        phone = mobile or payment.payment_phone
        if not phone:
            raise PaymentValidationError("A phone number is required to confirm the payment")
        await db.commit()

        response = await adapter.confirm_otp(initialization.get("transactionReference"), otp, phone)
        self.append_response(db, payment_id, GatewayResponseKind.VERIFICATION, {"otp_confirmation": response})
        await db.commit()
        return response

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    @staticmethod
    async def refunded_amount(db: AsyncSession, payment_id: int, statuses=RESERVING_REFUND_STATUSES) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(Refund.amount_cents), 0))
            .where(Refund.payment_id == payment_id)
            .where(Refund.status.in_(statuses))
        )
        return int(result.scalar_one())

    async def refundable_amount(self, db: AsyncSession, payment: Payment) -> int:
        return payment.amount_cents - await self.refunded_amount(db, payment.id)

    async def process_refund(
        self,
        db: AsyncSession,
        payment: Payment,
        amount_cents: int,
        reason: Optional[str],
        actor: User,
        admin_notes: Optional[str] = None,
    ) -> Refund:
        """
        Refund all or part of a completed payment.

        The refund is reserved (pending) and committed before the provider is
        called, so concurrent refunds can never exceed the payment amount.

        Raises:
            InvalidRefundAmount: Non-positive amount, payment not refundable, or amount too large
            RefundFailed: If the provider call fails (refund marked failed, payment untouched)
        """
        if amount_cents is None or amount_cents <= 0:
            raise InvalidRefundAmount("Refund amount must be greater than zero")
        if payment.status not in REFUNDABLE_STATUSES:
            raise InvalidRefundAmount(
                f"Payment {payment.payment_reference} is {payment.status.value} and cannot be refunded"
            )

        adapter = await self._resolve_adapter(db, payment)
        intent = await self._build_intent(db, payment)
        payment_id = payment.id
        payment_amount = payment.amount_cents
        actor_id = actor.id
        await db.commit()

        # Touching the row takes the payment's write lock for the reservation
        now = self.clock.now()
        try:
            locked = await db.execute(
                update(Payment)
                .where(Payment.id == payment_id)
                .where(Payment.status.in_(REFUNDABLE_STATUSES))
                .values(updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if locked.rowcount == 0:
                raise InvalidRefundAmount(f"Payment {intent.reference} can no longer be refunded")

            already_refunded = await self.refunded_amount(db, payment_id)
            if already_refunded + amount_cents > payment_amount:
                raise InvalidRefundAmount(
                    f"Refund of {amount_cents} exceeds the refundable amount "
                    f"({payment_amount - already_refunded} of {payment_amount})"
                )

            refund = Refund(
                payment_id=payment_id,
                processed_by=actor_id,
                amount_cents=amount_cents,
                currency=payment.currency,
                status=RefundStatus.PENDING,
                reason=reason,
                admin_notes=admin_notes,
                created_at=now,
                updated_at=now,
            )
            db.add(refund)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        refund_id = refund.id

        try:
            result = await adapter.refund_payment(intent, amount_cents)
        except (GatewayError, ValueError) as e:
            await db.execute(
                update(Refund)
                .where(Refund.id == refund_id)
                .values(
                    status=RefundStatus.FAILED,
                    gateway_response={"error": str(e)},
                    updated_at=self.clock.now(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            refunds_total.labels(gateway=adapter.slug, status=RefundStatus.FAILED.value).inc()
            log_refund_processed(
                logger,
                refund_id=refund_id,
                payment_id=payment_id,
                amount_cents=amount_cents,
                status=RefundStatus.FAILED.value,
                gateway=adapter.slug,
                user_id=actor_id,
                error=str(e),
            )
            raise RefundFailed(f"Refund failed: {e}", gateway=adapter.slug) from e

        if result.status == ProviderRefundStatus.SUCCEEDED:
            refund_status = RefundStatus.COMPLETED
        elif result.status in (ProviderRefundStatus.PENDING, ProviderRefundStatus.MANUAL_PROCESSING_REQUIRED):
            refund_status = RefundStatus.PROCESSING
        else:
            refund_status = RefundStatus.FAILED

        now = self.clock.now()
        try:
            await db.execute(
                update(Refund)
                .where(Refund.id == refund_id)
                .values(
                    status=refund_status,
                    gateway_refund_id=result.refund_id,
                    gateway_response={"status": result.status.value, "raw_response": result.raw_response},
                    processed_at=now if refund_status == RefundStatus.COMPLETED else None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if refund_status != RefundStatus.FAILED:
                accepted = await self.refunded_amount(
                    db, payment_id, statuses=(RefundStatus.PROCESSING, RefundStatus.COMPLETED)
                )
                if accepted >= payment_amount:
                    moved = await self._transition(db, payment_id, PaymentStatus.REFUNDED, refunded_at=now)
                    if moved:
                        await self._release_registrations(db, payment_id)
                else:
                    moved = await self._transition(db, payment_id, PaymentStatus.PARTIALLY_REFUNDED)
                if not moved:
                    logger.warning(
                        f"Payment {intent.reference} changed status during refund {refund_id}",
                        extra={"event": "refund_status_conflict", "payment_id": payment_id}
                    )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        refunds_total.labels(gateway=adapter.slug, status=refund_status.value).inc()
        log_refund_processed(
            logger,
            refund_id=refund_id,
            payment_id=payment_id,
            amount_cents=amount_cents,
            status=refund_status.value,
            gateway=adapter.slug,
            user_id=actor_id,
        )

        refreshed = await db.execute(
            select(Refund).where(Refund.id == refund_id).execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    async def _release_registrations(self, db: AsyncSession, payment_id: int):
        """Full refund: tickets are cancelled and registrations become payable again."""
        registration_ids = await self._registration_ids(db, payment_id)
        await self.ticket_service.cancel_tickets_for_registrations(db, registration_ids)
        if registration_ids:
            await db.execute(
                update(EventRegistration)
                .where(EventRegistration.id.in_(registration_ids))
                .where(EventRegistration.status == RegistrationStatus.CONFIRMED)
                .values(status=RegistrationStatus.PENDING, updated_at=self.clock.now())
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_stale_payments(
        self,
        db: AsyncSession,
        older_than: timedelta,
        limit: int = 100,
    ) -> ReconciliationReport:
        """Verify processing payments that have not moved for ``older_than``."""
        cutoff = self.clock.now() - older_than
        result = await db.execute(
            select(Payment.id)
            .where(Payment.status == PaymentStatus.PROCESSING)
            .where(Payment.updated_at < cutoff)
            .order_by(Payment.updated_at)
            .limit(limit)
        )
        payment_ids = list(result.scalars().all())
        await db.commit()

        report = ReconciliationReport()
        for payment_id in payment_ids:
            report.checked += 1
            try:
                payment = await self.get_payment(db, payment_id)
                outcome = await self.verify(db, payment)
            except PaymentError as e:
                await db.rollback()
                report.errors.append(payment_id)
                reconciled_payments_total.labels(result="error").inc()
                logger.warning(
                    f"Reconciliation of payment {payment_id} failed: {e}",
                    extra={"event": "payment_reconcile_error", "payment_id": payment_id}
                )
                continue

            status = outcome.payment.status
            if status in SETTLED_STATUSES:
                report.settled += 1
                reconciled_payments_total.labels(result="settled").inc()
            elif status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
                report.failed += 1
                reconciled_payments_total.labels(result="failed").inc()
            else:
                report.still_processing += 1
                reconciled_payments_total.labels(result="processing").inc()

        logger.info(
            f"Reconciled {report.checked} stale payments",
            extra={
                "event": "payments_reconciled",
                "checked": report.checked,
                "settled": report.settled,
                "failed": report.failed,
                "still_processing": report.still_processing,
                "errors": len(report.errors),
            }
        )
        return report


# Global settlement service instance
settlement_service = SettlementService()


def get_settlement_service() -> SettlementService:
    """Dependency for FastAPI routes (overridden in tests)."""
    return settlement_service
