# tests/conftest.py

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from src.application.booking_service import BookingLifecycleService, ServiceLine
from src.application.delivery_handlers import build_default_registry
from src.domain.exceptions import GatewayError
from src.infrastructure.db.models import Base, Booking, OutboxMessage, PaymentAttempt, Voucher
from src.infrastructure.db.session import build_engine, make_session_scope
from src.infrastructure.gateway.paymongo import PaymentIntentSnapshot
from src.infrastructure.locks import TableAdvisoryLock

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
TENANT = "tenant-1"


class FakeGateway:

    def __init__(self):
        self.intents: dict[str, PaymentIntentSnapshot | Exception] = {}
        self.calls: list[str] = []

    def set(self, intent_id: str, status: str | None, amount: int | None = None, currency: str | None = "PHP"):
        self.intents[intent_id] = PaymentIntentSnapshot(status=status, amount=amount, currency=currency)

    def fail(self, intent_id: str, error: Exception | None = None):
        self.intents[intent_id] = error or GatewayError(f"timeout reading {intent_id}")

    def get_payment_intent(self, payment_intent_id: str) -> PaymentIntentSnapshot:
        self.calls.append(payment_intent_id)
        result = self.intents.get(payment_intent_id)
        if result is None:
            return PaymentIntentSnapshot(status="awaiting_payment_method", amount=None, currency=None)
        if isinstance(result, Exception):
            raise result
        return result


class RecordingEmailSender:

    def __init__(self):
        self.sent: list[dict] = []
        self.error: Exception | None = None

    def send(self, to, subject, html, text):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": list(to), "subject": subject, "html": html, "text": text})


@pytest.fixture
def engine(tmp_path):
    # File-backed so the table lock's own connections see the same data.
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_scope(engine):
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    return make_session_scope(factory)


@pytest.fixture
def lock(engine):
    return TableAdvisoryLock(engine, ttl_seconds=120)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def registry(session_scope, email_sender):
    return build_default_registry(session_scope, email_sender)


@pytest.fixture
def make_voucher(session_scope):

    def _make(code: str = "SAVE50", discount_type: str = "FLAT", discount_value: int = 5000, tenant_id: str = TENANT):
        with session_scope() as db:
            voucher = Voucher(
                tenant_id=tenant_id,
                code=code,
                discount_type=discount_type,
                discount_value=discount_value,
                is_active=True,
            )
            db.add(voucher)
            db.flush()
            return voucher.id

    return _make


@pytest.fixture
def make_booking(session_scope):

    def _make(
        prices=(30000,),
        email: str | None = "customer@example.com",
        voucher_code: str | None = None,
        payment_method: str = "GATEWAY",
        hold_ttl: timedelta = timedelta(minutes=15),
        now: datetime = NOW,
        tenant_id: str = TENANT,
    ) -> str:
        with session_scope() as db:
            booking = BookingLifecycleService(db).create_hold(
                tenant_id=tenant_id,
                scheduled_start=now + timedelta(days=1),
                scheduled_end=now + timedelta(days=1, hours=1),
                services=[ServiceLine(f"Service {i}", price) for i, price in enumerate(prices)],
                customer_name="Ana Cruz",
                customer_email=email,
                voucher_code=voucher_code,
                payment_method=payment_method,
                hold_ttl=hold_ttl,
                now=now,
            )
            return booking.id

    return _make


@pytest.fixture
def make_attempt(session_scope):

    def _make(
        booking_id: str,
        amount_principal: int = 30000,
        amount_charged: int | None = None,
        payment_intent_id: str | None = "pi_1",
        created_at: datetime | None = NOW - timedelta(minutes=10),
        expires_at: datetime | None = None,
    ) -> str:
        with session_scope() as db:
            attempt = BookingLifecycleService(db).start_payment_attempt(
                booking_id=booking_id,
                amount_principal=amount_principal,
                amount_charged=amount_charged,
                payment_intent_id=payment_intent_id,
                expires_at=expires_at,
            )
            if created_at is not None:
                attempt.created_at = created_at
            return attempt.id

    return _make


@pytest.fixture
def client(engine, session_scope, lock, gateway, registry):
    from src.api.routes.routes import (
        get_advisory_lock,
        get_db,
        get_delivery_registry,
        get_payment_gateway,
        get_session_scope,
    )
    from src.main import app

    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    def override_get_db():
        db = factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_scope] = lambda: session_scope
    app.dependency_overrides[get_advisory_lock] = lambda: lock
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_delivery_registry] = lambda: registry

    yield TestClient(app)

    app.dependency_overrides.clear()


def attempt_row(session_scope, attempt_id: str) -> dict:
    with session_scope() as db:
        attempt = db.get(PaymentAttempt, attempt_id)
        return {
            "status": attempt.status.value,
            "failure_reason": attempt.failure_reason,
            "failure_details": attempt.failure_details,
            "paid_at": attempt.paid_at,
        }


def booking_row(session_scope, booking_id: str) -> dict:
    with session_scope() as db:
        booking = db.get(Booking, booking_id)
        return {
            "status": booking.status.value,
            "payment_status": booking.payment_status.value,
            "amount_paid": booking.amount_paid,
            "grand_total": booking.grand_total,
            "hold_expires_at": booking.hold_expires_at,
        }


def outbox_rows(session_scope, event_type: str | None = None) -> list[dict]:
    with session_scope() as db:
        stmt = select(OutboxMessage).order_by(OutboxMessage.created_at)
        if event_type:
            stmt = stmt.where(OutboxMessage.event_type == event_type)
        return [
            {
                "id": message.id,
                "event_type": message.event_type,
                "payload": json.loads(message.payload),
                "status": message.status,
                "attempts": message.attempts,
                "last_error": message.last_error,
                "next_attempt_at": message.next_attempt_at,
                "dedupe_key": message.dedupe_key,
            }
            for message in db.execute(stmt).scalars()
        ]
