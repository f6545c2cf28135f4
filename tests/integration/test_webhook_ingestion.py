# tests/integration/test_webhook_ingestion.py

import hashlib
import json
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from conftest import NOW, TENANT, attempt_row, booking_row, outbox_rows
from src.application.booking_service import BookingLifecycleService
from src.application.webhook_ingestion import WebhookIngestionService, resolve_event_id
from src.domain.state_machine import ServiceUnitStatus
from src.infrastructure.db.models import AuditLog, Booking, PaymentAttempt, Voucher
from src.infrastructure.gateway.webhook_security import sign_payload
from src.infrastructure.repositories.audit_repository import AuditRepository

SECRET = "whsk_ingestion"


def _body(event_type: str, event_id: str = "evt_1", **payment_attributes) -> bytes:
    return json.dumps(
        {
            "data": {
                "id": event_id,
                "attributes": {
                    "type": event_type,
                    "data": {"id": "pay_1", "attributes": payment_attributes},
                },
            }
        }
    ).encode()


@pytest.fixture
def service(session_scope, lock):
    return WebhookIngestionService(session_scope, lock, secret=SECRET)


def _deliver(service, body: bytes, secret: str = SECRET, timestamp: int | None = None):
    header = sign_payload(secret, body, timestamp or int(NOW.timestamp()))
    return service.handle(body, header, now=NOW)


def _audit_rows(session_scope) -> list[tuple]:
    with session_scope() as db:
        rows = db.execute(select(AuditLog)).scalars().all()
        return [(row.entity_id, row.action, row.tenant_id) for row in rows]


# ---------------------
# BOUNDARY CHECKS
# ---------------------

def test_bad_signature_changes_nothing(service, session_scope):
    outcome = _deliver(service, _body("payment.paid", payment_intent_id="pi_1"), secret="wrong")

    assert (outcome.status_code, outcome.message) == (401, "Invalid signature")
    assert _audit_rows(session_scope) == []


def test_stale_timestamp_is_rejected(service):
    body = _body("payment.paid", payment_intent_id="pi_1")
    outcome = _deliver(service, body, timestamp=int(NOW.timestamp()) - 301)

    assert outcome.status_code == 401


def test_missing_signature_header(service):
    outcome = service.handle(_body("payment.paid"), None, now=NOW)

    assert outcome.status_code == 401


def test_invalid_json_body(service):
    outcome = _deliver(service, b"{not json")

    assert (outcome.status_code, outcome.message) == (400, "Invalid JSON body")


def test_missing_event_type(service):
    outcome = _deliver(service, json.dumps({"data": {"id": "evt_1", "attributes": {}}}).encode())

    assert (outcome.status_code, outcome.message) == (400, "Missing event type")


def test_missing_payment_intent_id(service, session_scope):
    outcome = _deliver(service, _body("payment.paid", amount=300))

    assert (outcome.status_code, outcome.message) == (400, "Missing payment intent ID")
    assert _audit_rows(session_scope) == []


# ---------------------
# EVENT DISPATCH
# ---------------------

def test_unrelated_event_is_recorded_and_ignored(service, session_scope):
    outcome = _deliver(service, _body("source.chargeable", event_id="evt_source"))

    assert (outcome.status_code, outcome.message) == (200, "Event ignored")
    assert _audit_rows(session_scope) == [("evt_source", "PROCESSED", "system")]


def test_unknown_intent_is_acknowledged(service, session_scope):
    outcome = _deliver(service, _body("payment.paid", event_id="evt_x", payment_intent_id="pi_missing"))

    assert (outcome.status_code, outcome.message) == (200, "Webhook processed")
    assert _audit_rows(session_scope) == [("evt_x", "PROCESSED", "system")]


def test_failed_payment_cancels_hold_and_frees_voucher(
    service, session_scope, make_voucher, make_booking, make_attempt
):
    voucher_id = make_voucher(code="SAVE50")
    booking_id = make_booking(prices=(30000,), voucher_code="SAVE50")
    attempt_id = make_attempt(booking_id, amount_principal=25000, payment_intent_id="pi_f")

    outcome = _deliver(service, _body("payment.failed", payment_intent_id="pi_f"))

    assert outcome.status_code == 200
    attempt = attempt_row(session_scope, attempt_id)
    assert (attempt["status"], attempt["failure_reason"]) == ("FAILED", "PAYMENT_FAILED")
    assert booking_row(session_scope, booking_id)["status"] == "CANCELLED"
    cancelled = outbox_rows(session_scope, "BOOKING_CANCELLED")
    assert [row["payload"]["reason"] for row in cancelled] == ["PAYMENT_FAILED"]
    with session_scope() as db:
        voucher = db.get(Voucher, voucher_id)
        assert voucher.used_by_id is None
        assert voucher.is_active is True


@pytest.mark.parametrize(
    "event_type, attempt_status, reason",
    [
        ("payment.canceled", "CANCELED", "PAYMENT_CANCELED"),
        ("qrph.expired", "EXPIRED", "PAYMENT_EXPIRED"),
    ],
)
def test_terminal_gateway_events(
    service, session_scope, make_booking, make_attempt, event_type, attempt_status, reason
):
    booking_id = make_booking(prices=(30000,))
    attempt_id = make_attempt(booking_id, amount_principal=30000, payment_intent_id="pi_t")

    _deliver(service, _body(event_type, payment_intent_id="pi_t"))

    assert attempt_row(session_scope, attempt_id)["status"] == attempt_status
    assert booking_row(session_scope, booking_id)["status"] == "CANCELLED"
    assert outbox_rows(session_scope, "BOOKING_CANCELLED")[0]["payload"]["reason"] == reason


def test_currency_mismatch_is_not_applied(service, session_scope, make_booking, make_attempt):
    booking_id = make_booking(prices=(30000,))
    attempt_id = make_attempt(booking_id, amount_principal=30000, payment_intent_id="pi_usd")

    _deliver(
        service,
        _body("payment.paid", payment_intent_id="pi_usd", amount=30000, currency="USD"),
    )

    attempt = attempt_row(session_scope, attempt_id)
    assert (attempt["status"], attempt["failure_reason"]) == ("FAILED", "UNEXPECTED_CURRENCY")
    assert booking_row(session_scope, booking_id)["status"] == "HOLD"


def test_paid_event_uses_nested_payment_intent(service, session_scope, make_booking, make_attempt):
    booking_id = make_booking(prices=(30000,))
    make_attempt(booking_id, amount_principal=30000, payment_intent_id="pi_nested")

    outcome = _deliver(
        service,
        _body("payment.paid", payment_intent={"id": "pi_nested"}, amount=30000, currency="PHP"),
    )

    assert outcome.message == "Webhook processed"
    assert booking_row(session_scope, booking_id)["payment_status"] == "PAID"


def test_fully_paid_booking_with_served_units_is_completed(
    service, session_scope, make_booking, make_attempt
):
    booking_id = make_booking(prices=(30000,))
    with session_scope() as db:
        unit_id = db.get(Booking, booking_id).service_units[0].id
        BookingLifecycleService(db).update_service_unit_status(unit_id, ServiceUnitStatus.COMPLETED)
    make_attempt(booking_id, amount_principal=30000, payment_intent_id="pi_done")

    _deliver(service, _body("payment.paid", payment_intent_id="pi_done", amount=30000))

    assert booking_row(session_scope, booking_id)["status"] == "COMPLETED"


# ---------------------
# HOSTED CHECKOUT
# ---------------------

def _checkout_body(metadata, event_id: str = "evt_checkout", session_id: str = "cs_1") -> bytes:
    return json.dumps(
        {
            "data": {
                "id": event_id,
                "attributes": {
                    "type": "checkout_session.payment.paid",
                    "data": {"id": session_id, "attributes": {"metadata": metadata}},
                },
            }
        }
    ).encode()


def _checkout_metadata(**overrides) -> dict:
    metadata = {
        "tenant_id": TENANT,
        "services": json.dumps([{"name": "Haircut", "price": 30000}, {"name": "Shave", "price": 5000}]),
        "scheduled_at": (NOW + timedelta(days=1)).isoformat(),
        "estimated_end": (NOW + timedelta(days=1, hours=1)).isoformat(),
        "customer_name": "Ana",
        "email": "ana@example.com",
    }
    metadata.update(overrides)
    return metadata


def _bookings(session_scope) -> list[dict]:
    with session_scope() as db:
        return [
            {
                "status": booking.status.value,
                "payment_status": booking.payment_status.value,
                "amount_paid": booking.amount_paid,
                "grand_total": booking.grand_total,
                "tenant_id": booking.tenant_id,
                "units": len(booking.service_units),
            }
            for booking in db.execute(select(Booking)).scalars().all()
        ]


def test_paid_checkout_creates_confirmed_booking(service, session_scope):
    outcome = _deliver(service, _checkout_body(_checkout_metadata()))

    assert (outcome.status_code, outcome.message) == (200, "Webhook processed")
    assert _bookings(session_scope) == [
        {
            "status": "ACCEPTED",
            "payment_status": "PAID",
            "amount_paid": 35000,
            "grand_total": 35000,
            "tenant_id": TENANT,
            "units": 2,
        }
    ]
    with session_scope() as db:
        attempt = db.execute(select(PaymentAttempt)).scalar_one()
        assert (attempt.payment_intent_id, attempt.status.value) == ("cs_1", "SUCCEEDED")
    assert len(outbox_rows(session_scope, "BOOKING_CONFIRMED")) == 1
    assert _audit_rows(session_scope) == [("evt_checkout", "PROCESSED", TENANT)]


def test_paid_checkout_applies_voucher(service, session_scope, make_voucher):
    make_voucher(code="SAVE50")

    _deliver(service, _checkout_body(_checkout_metadata(voucher_code="SAVE50")))

    [booking] = _bookings(session_scope)
    assert booking["grand_total"] == booking["amount_paid"]
    assert booking["grand_total"] < 35000
    assert booking["status"] == "ACCEPTED"


@pytest.mark.parametrize(
    "metadata",
    [
        None,
        {},
        {"services": json.dumps([{"name": "Haircut", "price": 30000}])},
        {"tenant_id": TENANT},
    ],
)
def test_checkout_without_metadata_is_rejected(service, session_scope, metadata):
    outcome = _deliver(service, _checkout_body(metadata))

    assert (outcome.status_code, outcome.message) == (400, "Missing metadata")
    assert _bookings(session_scope) == []
    assert _audit_rows(session_scope) == []


def test_checkout_with_unreadable_services_is_rejected(service, session_scope):
    outcome = _deliver(service, _checkout_body(_checkout_metadata(services="[{\"name\": \"Haircut\"}]")))

    assert (outcome.status_code, outcome.message) == (400, "Invalid services metadata")
    assert _bookings(session_scope) == []


def test_second_event_for_same_checkout_books_once(service, session_scope):
    _deliver(service, _checkout_body(_checkout_metadata(), event_id="evt_a"))
    outcome = _deliver(service, _checkout_body(_checkout_metadata(), event_id="evt_b"))

    assert (outcome.status_code, outcome.message) == (200, "Webhook processed")
    assert len(_bookings(session_scope)) == 1
    assert sorted(_audit_rows(session_scope)) == [
        ("evt_a", "PROCESSED", TENANT),
        ("evt_b", "PROCESSED", TENANT),
    ]


def test_unexpected_error_returns_500_and_releases_lock(service, session_scope, lock, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(service, "_process", explode)

    outcome = _deliver(service, _body("payment.paid", payment_intent_id="pi_1"))

    assert (outcome.status_code, outcome.message) == (500, "Internal Server Error")
    assert lock.try_lock("paymongo:webhook:evt_1")


def test_concurrent_record_of_same_event_is_acknowledged(service, session_scope, monkeypatch):
    with session_scope() as db:
        AuditRepository(db).record(
            entity_type="PAYMONGO_WEBHOOK_EVENT",
            entity_id="evt_race",
            action="PROCESSED",
            actor_type="WEBHOOK",
        )

    # The first lookup misses the row written by the other delivery.
    original = AuditRepository.exists
    lookups = []

    def racing_exists(self, *args):
        lookups.append(args)
        return False if len(lookups) == 1 else original(self, *args)

    monkeypatch.setattr(AuditRepository, "exists", racing_exists)

    outcome = _deliver(service, _body("source.chargeable", event_id="evt_race"))

    assert (outcome.status_code, outcome.message) == (200, "Webhook already processed")
    assert len(lookups) == 2


def test_unrelated_constraint_violation_is_not_acknowledged(service, session_scope, monkeypatch):
    def violate(*args, **kwargs):
        raise IntegrityError("INSERT INTO payment_attempts", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(service, "_apply_payment_event", violate)

    outcome = _deliver(service, _body("payment.paid", event_id="evt_conflict", payment_intent_id="pi_1"))

    assert (outcome.status_code, outcome.message) == (500, "Internal Server Error")
    assert _audit_rows(session_scope) == []


def test_event_id_falls_back_to_body_hash():
    body = b'{"type": "payment.paid"}'

    assert resolve_event_id({"data": {"id": "evt_9"}}, body) == "evt_9"
    assert resolve_event_id({"id": "evt_top"}, body) == "evt_top"
    assert resolve_event_id({"data": {}}, body) == hashlib.sha256(body).hexdigest()
