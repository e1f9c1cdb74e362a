"""
Test configuration and fixtures.
Uses a throwaway SQLite database (aiosqlite) per test and a scriptable fake gateway.
"""
import os

from cryptography.fernet import Fernet

# Set test environment before any imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./eventpay_test.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["ENVIRONMENT"] = "test"
os.environ["CREDENTIALS_ENCRYPTION_KEY"] = Fernet.generate_key().decode()

import json
from datetime import datetime
from typing import AsyncGenerator, List, Optional

import pytest
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import build_engine, build_session_factory, init_db
from app.exceptions import InvalidSignature
from app.gateways.base import (
    GatewayOutcome,
    InitOptions,
    InitResult,
    PaymentGatewayAdapter,
    ProviderRefundStatus,
    RefundResult,
    VerifyResult,
    WebhookResult,
)
from app.gateways.registry import build_default_registry
from app.models.base import Base
from app.models.event import Event, EventRegistration
from app.models.payment_gateway import PaymentGateway
from app.models.user import User
from app.services.payment_ledger import PaymentLedger
from app.services.settlement_service import SettlementService
from app.services.webhook_service import WebhookIngestionService
from app.utils.clock import FrozenClock

FAKE_WEBHOOK_SECRET = "fake-webhook-secret"


class FakeGatewayState:
    """What the fake gateway answers; shared by every adapter instance."""

    def __init__(self):
        self.init_error: Optional[Exception] = None
        self.verify_status = GatewayOutcome.COMPLETED
        self.verify_amount_cents: Optional[int] = None
        self.verify_error: Optional[Exception] = None
        self.refund_status = ProviderRefundStatus.SUCCEEDED
        self.refund_error: Optional[Exception] = None
        self.calls: List[str] = []

    def count(self, operation: str) -> int:
        return self.calls.count(operation)


class FakeGateway(PaymentGatewayAdapter):
    """
    In-memory adapter.
    Webhooks are JSON {"reference", "status", "transaction_id"} signed by
    sending the webhook secret in X-Fake-Signature.
    """

    def __init__(self, config, state: FakeGatewayState):
        super().__init__(config)
        self.state = state

    async def initialize_payment(self, intent, options: InitOptions) -> InitResult:
        self.state.calls.append("initialize")
        if self.state.init_error is not None:
            raise self.state.init_error
        return InitResult(
            gateway_data={"redirect_url": f"https://fake.test/pay/{intent.reference}", "session_id": f"sess_{intent.payment_id}"},
            raw_response={"ok": True, "reference": intent.reference},
        )

    async def verify_payment(self, intent) -> VerifyResult:
        self.state.calls.append("verify")
        if self.state.verify_error is not None:
            raise self.state.verify_error
        return VerifyResult(
            status=self.state.verify_status,
            transaction_id=f"txn_{intent.payment_id}",
            amount_cents=self.state.verify_amount_cents,
            raw_response={"status": self.state.verify_status.value},
        )

    async def refund_payment(self, intent, amount_cents: int) -> RefundResult:
        self.state.calls.append("refund")
        if self.state.refund_error is not None:
            raise self.state.refund_error
        return RefundResult(
            refund_id=f"re_{intent.payment_id}_{amount_cents}",
            status=self.state.refund_status,
            raw_response={"amount": amount_cents},
        )

    async def handle_webhook(self, request) -> WebhookResult:
        if request.header("X-Fake-Signature") != self.config.webhook_secret:
            raise InvalidSignature("Invalid fake signature")
        payload = request.payload
        status = payload.get("status")
        return WebhookResult(
            status=GatewayOutcome(status) if status else None,
            payment_reference=payload.get("reference"),
            transaction_id=payload.get("transaction_id"),
            event_type=payload.get("type"),
            failure_reason=payload.get("reason"),
        )


def signed_fake_webhook(reference: str, status: str = "completed", transaction_id: str = "txn_1", **extra):
    """Build (raw_body, headers) for a fake gateway webhook."""
    body = json.dumps({"reference": reference, "status": status, "transaction_id": transaction_id, **extra}).encode()
    return body, {"X-Fake-Signature": FAKE_WEBHOOK_SECRET, "Content-Type": "application/json"}


@pytest.fixture(scope="function")
async def engine(tmp_path):
    """
    File-backed SQLite so several sessions can race against the same data.
    Set TEST_DATABASE_URL to run against PostgreSQL instead.
    """
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'eventpay.db'}"
    test_engine = build_engine(url)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
def fake_state() -> FakeGatewayState:
    return FakeGatewayState()


@pytest.fixture
def registry(fake_state):
    gateway_registry = build_default_registry()
    gateway_registry.register("fake", lambda config: FakeGateway(config, fake_state))
    return gateway_registry


@pytest.fixture
def settlement(registry, clock) -> SettlementService:
    return SettlementService(registry=registry, clock=clock)


@pytest.fixture
def ledger(clock) -> PaymentLedger:
    return PaymentLedger(clock=clock)


@pytest.fixture
def webhook_ingestion(settlement, clock) -> WebhookIngestionService:
    return WebhookIngestionService(settlement=settlement, clock=clock)


async def _add(db: AsyncSession, obj):
    db.add(obj)
    await db.commit()
    await db.refresh(obj)
    return obj


@pytest.fixture(scope="function")
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    return await _add(db_session, User(firebase_uid="firebase-test-uid", email="payer@example.com", name="Tendai Moyo"))


@pytest.fixture(scope="function")
async def other_user(db_session: AsyncSession) -> User:
    return await _add(db_session, User(firebase_uid="firebase-other-uid", email="other@example.com", name="Other Person"))


@pytest.fixture(scope="function")
async def admin_user(db_session: AsyncSession) -> User:
    return await _add(
        db_session,
        User(firebase_uid="firebase-admin-uid", email="admin@example.com", name="Event Admin", is_admin=True),
    )


@pytest.fixture(scope="function")
async def event(db_session: AsyncSession) -> Event:
    """Paid event: $10.00 per registration."""
    return await _add(db_session, Event(name="Harare Tech Summit", price_cents=1000, currency="USD", is_paid=True))


@pytest.fixture(scope="function")
async def other_event(db_session: AsyncSession) -> Event:
    return await _add(db_session, Event(name="Bulawayo Meetup", price_cents=500, currency="USD", is_paid=True))


@pytest.fixture(scope="function")
async def free_event(db_session: AsyncSession) -> Event:
    return await _add(db_session, Event(name="Open Day", price_cents=0, currency="USD", is_paid=False))


@pytest.fixture(scope="function")
async def registrations(db_session: AsyncSession, event: Event, test_user: User) -> List[EventRegistration]:
    """Two pending registrations for the test user."""
    regs = [
        EventRegistration(event_id=event.id, user_id=test_user.id, registered_by=test_user.id, attendee_name="Tendai Moyo"),
        EventRegistration(event_id=event.id, user_id=None, registered_by=test_user.id, attendee_name="Rudo Moyo"),
    ]
    db_session.add_all(regs)
    await db_session.commit()
    for reg in regs:
        await db_session.refresh(reg)
    return regs


@pytest.fixture(scope="function")
async def fake_gateway(db_session: AsyncSession) -> PaymentGateway:
    return await _add(
        db_session,
        PaymentGateway(
            name="Fake Pay",
            slug="fake",
            is_active=True,
            credentials={"api_key": "fake-key"},
            settings={},
            webhook_secret=FAKE_WEBHOOK_SECRET,
            supported_currencies=["USD"],
        ),
    )


@pytest.fixture(scope="function")
async def pending_payment(db_session, ledger, event, test_user, registrations, fake_gateway):
    return await ledger.create_payment(
        db_session,
        event=event,
        payer=test_user,
        registration_ids=[r.id for r in registrations],
        gateway_slug="fake",
    )


@pytest.fixture(scope="function")
async def processing_payment(db_session, settlement, pending_payment):
    await settlement.initiate(db_session, pending_payment, InitOptions(payment_method="card"))
    return await settlement.get_payment(db_session, pending_payment.id)


@pytest.fixture(scope="function")
async def completed_payment(db_session, settlement, processing_payment):
    outcome = await settlement.mark_as_paid(db_session, processing_payment.id, "txn_paid")
    return outcome.payment


def get_test_app(db_session: AsyncSession, user: Optional[User], settlement: SettlementService,
                 webhook_ingestion: WebhookIngestionService) -> FastAPI:
    """Create a test FastAPI app with overridden dependencies."""
    from app.main import app
    from app.database import get_db
    from app.auth.dependencies import get_current_user
    from app.services.settlement_service import get_settlement_service
    from app.services.webhook_service import get_webhook_service

    async def override_get_db():
        yield db_session

    async def override_get_current_user():
        return user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settlement_service] = lambda: settlement
    app.dependency_overrides[get_webhook_service] = lambda: webhook_ingestion
    if user is not None:
        app.dependency_overrides[get_current_user] = override_get_current_user

    return app


@pytest.fixture(scope="function")
async def client(db_session, test_user, settlement, webhook_ingestion) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client authenticated as the test user."""
    app = get_test_app(db_session, test_user, settlement, webhook_ingestion)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    # Clean up overrides
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def admin_client(db_session, admin_user, settlement, webhook_ingestion) -> AsyncGenerator[AsyncClient, None]:
    app = get_test_app(db_session, admin_user, settlement, webhook_ingestion)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def anonymous_client(db_session, settlement, webhook_ingestion) -> AsyncGenerator[AsyncClient, None]:
    """Client without auth overrides (webhooks and public endpoints)."""
    app = get_test_app(db_session, None, settlement, webhook_ingestion)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
