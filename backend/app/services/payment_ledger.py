"""
Payment ledger.
Creates Payment + PaymentItem aggregates after validating the registrations
being paid for. Amounts are always derived from the event price, never
taken from the client.
"""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import GatewayUnavailable, InvalidRegistrationSet, PaymentValidationError
from app.models.event import Event, EventRegistration, RegistrationStatus
from app.models.payment import PAID_STATUSES, Payment, PaymentItem, PaymentStatus, generate_payment_reference
from app.models.payment_gateway import PaymentGateway
from app.models.user import User
from app.utils.clock import SystemClock
from app.utils.logging import log_payment_created
from app.utils.metrics import payments_created_total

logger = logging.getLogger(__name__)


class PaymentLedger:
    """Service for creating payments."""

    # Attempts before giving up on reference collisions
    MAX_REFERENCE_ATTEMPTS = 5

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()

    @staticmethod
    async def paid_registration_ids(db: AsyncSession, registration_ids: List[int]) -> List[int]:
        """Registrations covered by a completed or partially refunded payment."""
        if not registration_ids:
            return []
        result = await db.execute(
            select(PaymentItem.event_registration_id)
            .join(Payment, Payment.id == PaymentItem.payment_id)
            .where(PaymentItem.event_registration_id.in_(registration_ids))
            .where(Payment.status.in_(PAID_STATUSES))
            .distinct()
        )
        return sorted(result.scalars().all())

    @staticmethod
    async def resolve_gateway(db: AsyncSession, gateway_slug: str, currency: str) -> PaymentGateway:
        """
        Load an active gateway able to charge ``currency``.

        Raises:
            GatewayUnavailable: If missing, inactive or currency not supported
        """
        result = await db.execute(select(PaymentGateway).where(PaymentGateway.slug == gateway_slug))
        gateway = result.scalar_one_or_none()
        if gateway is None or not gateway.is_active:
            raise GatewayUnavailable(f"Payment gateway '{gateway_slug}' is not available")
        if not gateway.supports_currency(currency):
            raise GatewayUnavailable(f"Payment gateway '{gateway_slug}' does not support {currency.upper()}")
        return gateway

    async def create_payment(
        self,
        db: AsyncSession,
        event: Event,
        payer: User,
        registration_ids: List[int],
        gateway_slug: str,
        payment_method: Optional[str] = None,
        payment_phone: Optional[str] = None,
    ) -> Payment:
        """
        Create a pending payment covering ``registration_ids``.

        Args:
            db: Database session
            event: Event being paid for
            payer: User paying
            registration_ids: Registrations to cover (must belong to the event)
            gateway_slug: Gateway the payment will be charged through
            payment_method: Optional method (card, mobile_money, ...)
            payment_phone: Optional normalized phone for mobile money

        Returns:
            The persisted Payment with its items

        Raises:
            PaymentValidationError: Empty list or free event
            InvalidRegistrationSet: Missing, foreign or already paid registrations
            GatewayUnavailable: Gateway cannot charge this payment
        """
        ids = list(dict.fromkeys(registration_ids or []))
        if not ids:
            raise PaymentValidationError("At least one registration is required")
        if not event.is_paid or not event.price_cents or event.price_cents <= 0:
            raise PaymentValidationError(f"Event '{event.name}' is free and does not require payment")

        # Capture scalars up front; a rollback below expires ORM state
        event_id = event.id
        event_name = event.name
        price_cents = event.price_cents
        currency = (event.currency or "USD").upper()
        payer_id = payer.id

        result = await db.execute(
            select(EventRegistration)
            .where(EventRegistration.id.in_(ids))
            .where(EventRegistration.event_id == event_id)
        )
        registrations = {registration.id: registration for registration in result.scalars().all()}

        invalid_ids = [
            registration_id for registration_id in ids
            if registration_id not in registrations
            or registrations[registration_id].status == RegistrationStatus.CANCELLED
        ]
        if invalid_ids:
            raise InvalidRegistrationSet(
                "Some registrations are invalid or do not belong to this event",
                invalid_registration_ids=invalid_ids,
            )

        paid_ids = await self.paid_registration_ids(db, ids)
        if paid_ids:
            raise InvalidRegistrationSet(
                "Some registrations have already been paid for",
                paid_registration_ids=paid_ids,
            )

        gateway = await self.resolve_gateway(db, gateway_slug, currency)
        gateway_id = gateway.id
        gateway_name = gateway.name

        lines = [
            (registration_id, f"Registration for {event_name} - {registrations[registration_id].attendee_name}")
            for registration_id in ids
        ]
        amount_cents = price_cents * len(ids)

        for attempt in range(1, self.MAX_REFERENCE_ATTEMPTS + 1):
            reference = generate_payment_reference()
            now = self.clock.now()
            payment = Payment(
                payment_reference=reference,
                event_id=event_id,
                user_id=payer_id,
                payment_gateway_id=gateway_id,
                gateway_name=gateway_name,
                amount_cents=amount_cents,
                currency=currency,
                status=PaymentStatus.PENDING,
                payment_method=payment_method,
                payment_phone=payment_phone,
                created_at=now,
                updated_at=now,
                items=[
                    PaymentItem(
                        event_registration_id=registration_id,
                        description=description,
                        amount_cents=price_cents,
                        quantity=1,
                        created_at=now,
                    )
                    for registration_id, description in lines
                ],
                gateway_responses=[],
            )
            db.add(payment)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                collision = await db.execute(select(Payment.id).where(Payment.payment_reference == reference))
                if collision.scalar_one_or_none() is None:
                    raise
                logger.warning(
                    f"Payment reference collision on {reference} (attempt {attempt}), retrying",
                    extra={"event": "payment_reference_collision", "attempt": attempt}
                )
                continue

            payments_created_total.labels(gateway=gateway_slug).inc()
            log_payment_created(
                logger,
                payment_id=payment.id,
                payment_reference=reference,
                user_id=payer_id,
                gateway=gateway_slug,
                amount_cents=amount_cents,
                registrations=len(ids),
            )
            return payment

        raise PaymentValidationError("Could not allocate a unique payment reference, please retry")
