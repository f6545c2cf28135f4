# tests/unit/test_email.py

import pytest
import resend

from src.application.delivery_handlers import DeliveryHandlerRegistry, format_amount
from src.domain.exceptions import NonRetryableDeliveryError
from src.infrastructure.email import ResendEmailSender


def test_resend_sender_builds_message(monkeypatch):
    sent = []

    def fake_send(params):
        sent.append(params)
        return {"id": "email_123"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)

    sender = ResendEmailSender(api_key="re_test", from_address="Ledger <ledger@example.com>")
    sender.send(["ana@example.com"], "Booking confirmed", "<p>Hi</p>", "Hi")

    assert resend.api_key == "re_test"
    assert sent == [
        {
            "from": "Ledger <ledger@example.com>",
            "to": ["ana@example.com"],
            "subject": "Booking confirmed",
            "html": "<p>Hi</p>",
            "text": "Hi",
        }
    ]


def test_missing_api_key_is_not_retryable(monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)

    with pytest.raises(NonRetryableDeliveryError):
        ResendEmailSender().send(["ana@example.com"], "Subject", "<p>x</p>", "x")


def test_format_amount():
    assert format_amount(30000, "PHP") == "PHP 300.00"
    assert format_amount(123456789, None) == "PHP 1,234,567.89"


def test_registry_requires_every_event_type():
    with pytest.raises(ValueError) as exc_info:
        DeliveryHandlerRegistry({})

    assert "BOOKING_CONFIRMED" in str(exc_info.value)
