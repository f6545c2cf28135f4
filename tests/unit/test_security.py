# tests/unit/test_security.py

import base64

import pytest

from src.api.security import is_cron_authorized
from src.domain.exceptions import WebhookSignatureError
from src.infrastructure.gateway.webhook_security import (
    parse_signature_header,
    sign_payload,
    verify_webhook_signature,
)

SECRET = "whsk_test_secret"
BODY = b'{"data":{"id":"evt_1"}}'
NOW = 1_760_000_000


# ---------------------
# WEBHOOK SIGNATURES
# ---------------------

def test_valid_test_mode_signature():
    header = sign_payload(SECRET, BODY, NOW)
    verify_webhook_signature(BODY, header, SECRET, tolerance_seconds=300, now=NOW)


def test_valid_live_mode_signature():
    header = sign_payload(SECRET, BODY, NOW, field="li")
    verify_webhook_signature(BODY, header, SECRET, tolerance_seconds=300, now=NOW + 10)


def test_tampered_body_is_rejected():
    header = sign_payload(SECRET, BODY, NOW)
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY + b" ", header, SECRET, now=NOW)


def test_wrong_secret_is_rejected():
    header = sign_payload("other_secret", BODY, NOW)
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, header, SECRET, now=NOW)


def test_stale_timestamp_is_rejected():
    header = sign_payload(SECRET, BODY, NOW)
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, header, SECRET, tolerance_seconds=300, now=NOW + 301)


def test_future_timestamp_outside_tolerance_is_rejected():
    header = sign_payload(SECRET, BODY, NOW + 600)
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, header, SECRET, tolerance_seconds=300, now=NOW)


@pytest.mark.parametrize(
    "header",
    [None, "", "t=abc,te=deadbeef", "te=deadbeef", f"t={NOW}"],
)
def test_malformed_headers_are_rejected(header):
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, header, SECRET, now=NOW)


def test_missing_secret_is_rejected():
    header = sign_payload(SECRET, BODY, NOW)
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, header, None, now=NOW)


def test_parse_signature_header_keeps_known_parts():
    assert parse_signature_header("t=1, te=abc ,li=") == {"t": "1", "te": "abc"}


# ---------------------
# CRON AUTH
# ---------------------

def _basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


@pytest.fixture
def cron_env(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "cron-token")
    monkeypatch.setenv("CRON_PASSWORD", "hunter2")
    monkeypatch.delenv("CRON_USER", raising=False)


def test_bearer_token(cron_env):
    assert is_cron_authorized("Bearer cron-token")
    assert not is_cron_authorized("Bearer wrong")


def test_basic_credentials_default_user(cron_env):
    assert is_cron_authorized(_basic("admin", "hunter2"))
    assert not is_cron_authorized(_basic("admin", "nope"))
    assert not is_cron_authorized(_basic("root", "hunter2"))


def test_custom_cron_user(cron_env, monkeypatch):
    monkeypatch.setenv("CRON_USER", "scheduler")
    assert is_cron_authorized(_basic("scheduler", "hunter2"))
    assert not is_cron_authorized(_basic("admin", "hunter2"))


def test_missing_or_garbled_header(cron_env):
    assert not is_cron_authorized(None)
    assert not is_cron_authorized("Basic !!!not-base64!!!")
    assert not is_cron_authorized("Token cron-token")


def test_nothing_configured_denies_everything(monkeypatch):
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("CRON_PASSWORD", raising=False)
    assert not is_cron_authorized("Bearer ")
    assert not is_cron_authorized(_basic("admin", ""))


def test_scheme_can_be_disabled(cron_env):
    assert not is_cron_authorized("Bearer cron-token", allow_bearer=False)
    assert not is_cron_authorized(_basic("admin", "hunter2"), allow_basic=False)
