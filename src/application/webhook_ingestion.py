"""
PayMongo webhook ingestion.

Order of checks per delivery:
1. Signature and timestamp tolerance (401)
2. Body shape (400)
3. Per-event advisory lock (200 if another delivery holds it)
4. PROCESSED audit row (200 if already handled)
5. Event dispatch onto the booking state machine
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.booking_service import BookingLifecycleService, ServiceLine
from src.application.payment_checks import find_mismatch
from src.domain.exceptions import WebhookSignatureError
from src.domain.state_machine import BookingStatus, PaymentAttemptStatus
from src.infrastructure.config import (
    AMOUNT_MISMATCH_TOLERANCE,
    PAYMENT_CURRENCY,
    WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS,
    paymongo_webhook_secret,
)
from src.infrastructure.db.session import SessionScope, as_utc, utc_now
from src.infrastructure.gateway.paymongo import (
    checkout_session_of,
    event_type_of,
    paid_snapshot_of,
    payment_intent_id_of,
)
from src.infrastructure.gateway.webhook_security import verify_webhook_signature
from src.infrastructure.locks import AdvisoryLock
from src.infrastructure.repositories.audit_repository import AuditRepository
from src.infrastructure.repositories.payment_attempt_repository import PaymentAttemptRepository

logger = logging.getLogger(__name__)

WEBHOOK_ENTITY_TYPE = "PAYMONGO_WEBHOOK_EVENT"
PROCESSED_ACTION = "PROCESSED"

CHECKOUT_SESSION_PAID = "checkout_session.payment.paid"
PAYMENT_PAID = "payment.paid"
PAYMENT_FAILED = "payment.failed"
PAYMENT_CANCELED = "payment.canceled"
QRPH_EXPIRED = "qrph.expired"

_FAILURE_EVENTS = {
    PAYMENT_FAILED: PaymentAttemptStatus.FAILED,
    PAYMENT_CANCELED: PaymentAttemptStatus.CANCELED,
    QRPH_EXPIRED: PaymentAttemptStatus.EXPIRED,
}


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    message: str


class _BadRequest(Exception):
    pass


def resolve_event_id(event: dict, raw_body: bytes) -> str:
    data = event.get("data")
    if isinstance(data, dict) and isinstance(data.get("id"), str) and data["id"]:
        return data["id"]
    if isinstance(event.get("id"), str) and event["id"]:
        return event["id"]
    return hashlib.sha256(raw_body).hexdigest()


def webhook_lock_key(event_id: str) -> str:
    return f"paymongo:webhook:{event_id}"


def _service_lines(raw) -> list[ServiceLine]:
    """Checkout metadata carries services as a JSON string of {name, price} items."""
    try:
        items = json.loads(raw) if isinstance(raw, str) else raw
        lines = [ServiceLine(service_name=str(item["name"]), price=int(item["price"])) for item in items]
    except (TypeError, KeyError, ValueError) as exc:
        raise _BadRequest("Invalid services metadata") from exc
    if not lines:
        raise _BadRequest("Invalid services metadata")
    return lines


def _metadata_time(value, default: datetime) -> datetime:
    if not value:
        return default
    try:
        return as_utc(datetime.fromisoformat(value))
    except (TypeError, ValueError) as exc:
        raise _BadRequest(f"Invalid booking time {value!r}") from exc


class WebhookIngestionService:

    def __init__(
        self,
        session_scope: SessionScope,
        lock: AdvisoryLock,
        secret: str | None = None,
        tolerance_seconds: int = WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS,
        expected_currency: str = PAYMENT_CURRENCY,
        amount_tolerance: int = AMOUNT_MISMATCH_TOLERANCE,
    ):
        self.session_scope = session_scope
        self.lock = lock
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.expected_currency = expected_currency
        self.amount_tolerance = amount_tolerance

    def handle(
        self,
        raw_body: bytes,
        signature_header: str | None,
        now: datetime | None = None,
    ) -> WebhookOutcome:
        now = now or utc_now()

        try:
            verify_webhook_signature(
                raw_body,
                signature_header,
                self.secret or paymongo_webhook_secret(),
                tolerance_seconds=self.tolerance_seconds,
                now=now.timestamp(),
            )
        except WebhookSignatureError as exc:
            logger.error("Rejected webhook: %s", exc)
            return WebhookOutcome(401, "Invalid signature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            return WebhookOutcome(400, "Invalid JSON body")
        if not isinstance(event, dict):
            return WebhookOutcome(400, "Invalid JSON body")

        event_type = event_type_of(event)
        if not event_type:
            return WebhookOutcome(400, "Missing event type")

        event_id = resolve_event_id(event, raw_body)
        lock_key = webhook_lock_key(event_id)

        if not self.lock.try_lock(lock_key):
            logger.info("Webhook %s is already being processed", event_id)
            return WebhookOutcome(200, "Webhook already being processed")

        try:
            return self._process(event, event_id, event_type, now)
        except _BadRequest as exc:
            return WebhookOutcome(400, str(exc))
        except IntegrityError:
            if self._was_processed(event_id):
                logger.info("Webhook %s was recorded concurrently", event_id)
                return WebhookOutcome(200, "Webhook already processed")
            logger.exception("Webhook %s (%s) hit a constraint violation", event_id, event_type)
            return WebhookOutcome(500, "Internal Server Error")
        except Exception:
            logger.exception("Webhook %s (%s) processing failed", event_id, event_type)
            return WebhookOutcome(500, "Internal Server Error")
        finally:
            try:
                self.lock.unlock(lock_key)
            except Exception:
                logger.exception("Failed to release webhook lock %s", lock_key)

    def _was_processed(self, event_id: str) -> bool:
        with self.session_scope() as db:
            return AuditRepository(db).exists(WEBHOOK_ENTITY_TYPE, event_id, PROCESSED_ACTION)

    def _process(
        self,
        event: dict,
        event_id: str,
        event_type: str,
        now: datetime,
    ) -> WebhookOutcome:
        promote_booking_id = None

        with self.session_scope() as db:
            audit = AuditRepository(db)
            if audit.exists(WEBHOOK_ENTITY_TYPE, event_id, PROCESSED_ACTION):
                logger.info("Webhook %s already processed", event_id)
                return WebhookOutcome(200, "Webhook already processed")

            if event_type == PAYMENT_PAID or event_type in _FAILURE_EVENTS:
                payment_intent_id = payment_intent_id_of(event)
                if not payment_intent_id:
                    raise _BadRequest("Missing payment intent ID")
                tenant_id, promote_booking_id = self._apply_payment_event(
                    db, event, event_type, payment_intent_id, now
                )
                message = "Webhook processed"
            elif event_type == CHECKOUT_SESSION_PAID:
                tenant_id, promote_booking_id = self._book_paid_checkout(db, event, now)
                message = "Webhook processed"
            else:
                tenant_id = "system"
                message = "Event ignored"

            audit.record(
                entity_type=WEBHOOK_ENTITY_TYPE,
                entity_id=event_id,
                action=PROCESSED_ACTION,
                actor_type="WEBHOOK",
                tenant_id=tenant_id,
                changes={"event_type": event_type},
            )

        if promote_booking_id:
            with self.session_scope() as db:
                BookingLifecycleService(db).promote_to_completed_if_eligible(promote_booking_id)

        return WebhookOutcome(200, message)

    def _apply_payment_event(
        self,
        db: Session,
        event: dict,
        event_type: str,
        payment_intent_id: str,
        now: datetime,
    ) -> tuple[str, str | None]:
        """Returns (tenant id for the audit row, booking id to promote)."""
        attempt = PaymentAttemptRepository(db).get_latest_by_intent_id(payment_intent_id)
        if not attempt:
            logger.warning(
                "No payment attempt for intent %s (%s); recording and ignoring",
                payment_intent_id,
                event_type,
            )
            return "system", None

        service = BookingLifecycleService(db)
        tenant_id = attempt.booking.tenant_id

        if event_type != PAYMENT_PAID:
            service.fail_or_cancel_payment(attempt.id, _FAILURE_EVENTS[event_type])
            return tenant_id, None

        mismatch = find_mismatch(
            attempt.amount_charged,
            paid_snapshot_of(event),
            self.expected_currency,
            self.amount_tolerance,
        )
        if mismatch:
            service.mark_attempt_mismatch(attempt.id, mismatch.reason, mismatch.details)
            logger.error(
                "Payment for intent %s was not applied automatically: %s",
                payment_intent_id,
                mismatch.reason,
            )
            return tenant_id, None

        result = service.confirm_payment(attempt.id, now=now)
        return tenant_id, result.booking_id if result.applied else None

    def _book_paid_checkout(
        self,
        db: Session,
        event: dict,
        now: datetime,
    ) -> tuple[str, str | None]:
        """
        A paid hosted checkout: the booking only exists in the session metadata
        until now. Created as a hold, then confirmed through an attempt keyed by
        the checkout session id, so a second event for the same session is a no-op.
        """
        session_id, metadata = checkout_session_of(event)
        if not metadata or not metadata.get("tenant_id") or not metadata.get("services"):
            raise _BadRequest("Missing metadata")
        if not session_id:
            raise _BadRequest("Missing checkout session ID")

        existing = PaymentAttemptRepository(db).get_latest_by_intent_id(session_id)
        if existing:
            logger.info(
                "Checkout session %s already booked as %s", session_id, existing.booking_id
            )
            return existing.booking.tenant_id, None

        tenant_id = metadata["tenant_id"]
        scheduled_start = _metadata_time(metadata.get("scheduled_at"), now)
        scheduled_end = _metadata_time(metadata.get("estimated_end"), scheduled_start)

        service = BookingLifecycleService(db)
        try:
            booking = service.create_hold(
                tenant_id=tenant_id,
                scheduled_start=scheduled_start,
                scheduled_end=scheduled_end,
                services=_service_lines(metadata["services"]),
                customer_name=metadata.get("customer_name"),
                customer_email=metadata.get("email"),
                voucher_code=metadata.get("voucher_code") or None,
                now=now,
            )
        except ValueError as exc:
            raise _BadRequest(str(exc)) from exc

        if booking.status != BookingStatus.HOLD:
            return tenant_id, booking.id

        attempt = service.start_payment_attempt(
            booking.id,
            amount_principal=booking.grand_total,
            payment_intent_id=session_id,
        )
        result = service.confirm_payment(attempt.id, now=now)
        logger.info("Checkout session %s booked as %s", session_id, booking.id)
        return tenant_id, result.booking_id if result.applied else None
