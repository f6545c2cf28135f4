# src/infrastructure/gateway/paymongo.py

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from src.domain.exceptions import GatewayError
from src.infrastructure.config import (
    PAYMONGO_API_BASE,
    PAYMONGO_TIMEOUT_SECONDS,
    paymongo_secret_key,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntentSnapshot:
    status: str | None
    amount: int | None
    currency: str | None


class PaymentGateway(Protocol):
    def get_payment_intent(self, payment_intent_id: str) -> PaymentIntentSnapshot: ...


def parse_intent_snapshot(payment_intent: Any) -> PaymentIntentSnapshot:
    """
    Reads status, amount (minor units) and currency out of a PayMongo
    payment intent resource. Unknown shapes yield empty fields.
    """
    if not isinstance(payment_intent, dict):
        return PaymentIntentSnapshot(status=None, amount=None, currency=None)

    attrs = payment_intent.get("attributes")
    if not isinstance(attrs, dict):
        attrs = {}

    status = attrs.get("status")
    amount = attrs.get("amount")
    currency = attrs.get("currency")

    return PaymentIntentSnapshot(
        status=status.lower() if isinstance(status, str) else None,
        amount=amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
        currency=currency.upper() if isinstance(currency, str) else None,
    )


class PayMongoClient:

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str = PAYMONGO_API_BASE,
        timeout: float = PAYMONGO_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self.secret_key = secret_key or paymongo_secret_key()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def get_payment_intent(self, payment_intent_id: str) -> PaymentIntentSnapshot:
        if not self.secret_key:
            raise GatewayError("PAYMONGO_SECRET_KEY is not configured")

        url = f"{self.base_url}/payment_intents/{payment_intent_id}"
        try:
            with httpx.Client(
                timeout=self.timeout,
                auth=(self.secret_key, ""),
                transport=self.transport,
            ) as client:
                response = client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise GatewayError(
                f"PayMongo returned {exc.response.status_code} for intent {payment_intent_id}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise GatewayError(
                f"PayMongo request failed for intent {payment_intent_id}: {exc}"
            ) from exc

        return parse_intent_snapshot(body.get("data") if isinstance(body, dict) else None)


def _payment_node(event: Any) -> dict:
    """The payment resource inside a webhook event, at whichever depth it sits."""
    if not isinstance(event, dict):
        return {}
    data = event.get("data")
    if not isinstance(data, dict):
        return {}
    attrs = data.get("attributes")
    if isinstance(attrs, dict) and isinstance(attrs.get("data"), dict):
        return attrs["data"]
    return data


def event_type_of(event: Any) -> str | None:
    if not isinstance(event, dict) or not isinstance(event.get("data"), dict):
        return None
    attrs = event["data"].get("attributes")
    if not isinstance(attrs, dict):
        return None
    event_type = attrs.get("type")
    return event_type if isinstance(event_type, str) and event_type else None


def payment_intent_id_of(event: Any) -> str | None:
    node = _payment_node(event)
    attrs = node.get("attributes") if isinstance(node.get("attributes"), dict) else node

    candidate = attrs.get("payment_intent_id")
    if not candidate:
        intent = attrs.get("payment_intent")
        candidate = intent.get("id") if isinstance(intent, dict) else intent
    return candidate if isinstance(candidate, str) and candidate else None


def paid_snapshot_of(event: Any) -> PaymentIntentSnapshot:
    """Amount and currency the gateway reports in a payment.paid event."""
    node = _payment_node(event)
    if not isinstance(node.get("attributes"), dict):
        node = {"attributes": node}
    return parse_intent_snapshot(node)


def checkout_session_of(event: Any) -> tuple[str | None, dict | None]:
    """(checkout session id, metadata) of a checkout_session.payment.paid event."""
    node = _payment_node(event)
    session_id = node.get("id")
    attrs = node.get("attributes")
    metadata = attrs.get("metadata") if isinstance(attrs, dict) else None
    return (
        session_id if isinstance(session_id, str) and session_id else None,
        metadata if isinstance(metadata, dict) else None,
    )
