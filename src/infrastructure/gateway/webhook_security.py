"""
Webhook signature verification for gateway notifications.

- HMAC-SHA256 over "<timestamp>.<raw body>", compared in constant time
- Timestamp tolerance window against replayed deliveries
"""

import hashlib
import hmac
import time

from src.domain.exceptions import WebhookSignatureError
from src.infrastructure.config import WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> dict[str, str]:
    parts: dict[str, str] = {}
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep and key and value:
            parts[key] = value
    return parts


def sign_payload(secret: str, raw_body: bytes, timestamp: int, field: str = "te") -> str:
    """Builds a signature header the way the gateway does."""
    signed = f"{timestamp}.".encode("utf-8") + raw_body
    return f"t={timestamp},{field}={compute_hmac_sha256(secret, signed)}"


def verify_webhook_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    tolerance_seconds: int = WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """
    Raises WebhookSignatureError unless the header carries a fresh, valid
    signature for raw_body. Accepts the live (li=) or test (te=) field.
    """
    if not signature_header:
        raise WebhookSignatureError("Missing signature header")
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")

    parts = parse_signature_header(signature_header)
    timestamp = parts.get("t")
    provided = parts.get("li") or parts.get("te")
    if not timestamp or not provided:
        raise WebhookSignatureError("Missing timestamp or signature in header")

    try:
        timestamp_seconds = int(timestamp)
    except ValueError as exc:
        raise WebhookSignatureError("Invalid timestamp in signature header") from exc

    current = time.time() if now is None else now
    if abs(current - timestamp_seconds) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance window")

    signed = f"{timestamp}.".encode("utf-8") + raw_body
    if not constant_time_compare(compute_hmac_sha256(secret, signed), provided):
        raise WebhookSignatureError("Signature mismatch")
