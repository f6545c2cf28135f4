# tests/unit/test_paymongo.py

import httpx
import pytest

from src.application.payment_checks import AMOUNT_MISMATCH, UNEXPECTED_CURRENCY, find_mismatch
from src.domain.exceptions import GatewayError
from src.infrastructure.gateway.paymongo import (
    PaymentIntentSnapshot,
    PayMongoClient,
    event_type_of,
    paid_snapshot_of,
    parse_intent_snapshot,
    payment_intent_id_of,
)


def _paid_event(**attributes) -> dict:
    return {
        "data": {
            "id": "evt_1",
            "attributes": {
                "type": "payment.paid",
                "data": {"id": "pay_1", "attributes": attributes},
            },
        }
    }


def test_parse_intent_snapshot_normalizes_case():
    snapshot = parse_intent_snapshot(
        {"attributes": {"status": "Succeeded", "amount": 30000, "currency": "php"}}
    )
    assert snapshot == PaymentIntentSnapshot(status="succeeded", amount=30000, currency="PHP")


def test_parse_intent_snapshot_tolerates_garbage():
    assert parse_intent_snapshot(None) == PaymentIntentSnapshot(None, None, None)
    assert parse_intent_snapshot({"attributes": {"amount": "300", "status": 7}}) == (
        PaymentIntentSnapshot(None, None, None)
    )


def test_event_fields_are_read_from_nested_payment():
    event = _paid_event(payment_intent_id="pi_1", amount=30000, currency="PHP")
    assert event_type_of(event) == "payment.paid"
    assert payment_intent_id_of(event) == "pi_1"
    assert paid_snapshot_of(event) == PaymentIntentSnapshot(None, 30000, "PHP")


def test_payment_intent_id_from_embedded_resource():
    assert payment_intent_id_of(_paid_event(payment_intent={"id": "pi_2"})) == "pi_2"
    assert payment_intent_id_of(_paid_event(payment_intent="pi_3")) == "pi_3"
    assert payment_intent_id_of(_paid_event(amount=1)) is None


def test_event_without_type():
    assert event_type_of({"data": {"attributes": {}}}) is None
    assert event_type_of({"id": "x"}) is None


# ---------------------
# MISMATCH CHECKS
# ---------------------

def test_amount_within_tolerance_is_accepted():
    snapshot = PaymentIntentSnapshot("succeeded", 30001, "PHP")
    assert find_mismatch(30000, snapshot, "PHP", amount_tolerance=1) is None


def test_amount_outside_tolerance_is_flagged():
    mismatch = find_mismatch(30000, PaymentIntentSnapshot("succeeded", 25000, "PHP"), "PHP", 1)
    assert mismatch.reason == AMOUNT_MISMATCH
    assert mismatch.details == {"expected_amount": 30000, "paid_amount": 25000, "delta": 5000}


def test_currency_is_checked_before_amount():
    mismatch = find_mismatch(30000, PaymentIntentSnapshot("succeeded", 1, "USD"), "PHP", 1)
    assert mismatch.reason == UNEXPECTED_CURRENCY


def test_missing_fields_are_not_held_against_payment():
    assert find_mismatch(30000, PaymentIntentSnapshot("succeeded", None, None), "PHP", 1) is None


# ---------------------
# HTTP CLIENT
# ---------------------

def test_client_reads_payment_intent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(
            200,
            json={"data": {"id": "pi_1", "attributes": {"status": "awaiting_next_action", "amount": 500, "currency": "PHP"}}},
        )

    client = PayMongoClient(
        secret_key="sk_test",
        base_url="https://api.example.test/v1/",
        transport=httpx.MockTransport(handler),
    )
    snapshot = client.get_payment_intent("pi_1")

    assert seen["url"] == "https://api.example.test/v1/payment_intents/pi_1"
    assert seen["auth"].startswith("Basic ")
    assert snapshot == PaymentIntentSnapshot("awaiting_next_action", 500, "PHP")


def test_client_wraps_http_errors():
    client = PayMongoClient(
        secret_key="sk_test",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(GatewayError):
        client.get_payment_intent("pi_1")


def test_client_requires_secret(monkeypatch):
    monkeypatch.delenv("PAYMONGO_SECRET_KEY", raising=False)
    with pytest.raises(GatewayError):
        PayMongoClient(secret_key=None).get_payment_intent("pi_1")
