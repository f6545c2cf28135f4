"""
Delivery handlers: one side effect per outbox event type.

Handlers may run more than once for the same row (a crash after the side
effect but before the row is marked delivered), so each one either checks
for its own prior effect or is harmless to repeat.
"""

import logging
from typing import Callable, Mapping, Protocol

from src.domain.events import (
    BookingCancelledPayload,
    BookingConfirmedPayload,
    ManualPaymentSubmittedPayload,
    OutboxEventType,
    PaymentConfirmedPayload,
    SocialTargetPublishPayload,
)
from src.domain.exceptions import NonRetryableDeliveryError, SocialPublishNonRetryableError
from src.infrastructure.config import platform_billing_emails
from src.infrastructure.db.models import Booking, SocialPostTarget
from src.infrastructure.db.session import SessionScope, utc_now
from src.infrastructure.email import EmailSender
from src.infrastructure.repositories.voucher_repository import VoucherRepository

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[object, str], None]

PUBLISHED = "PUBLISHED"
PUBLISHING = "PUBLISHING"
SOCIAL_FAILED = "FAILED"


class SocialPublisher(Protocol):
    def publish(self, platform: str, caption: str | None) -> str:
        """Publishes the post and returns the platform's post id."""
        ...


class DeliveryHandlerRegistry:

    def __init__(self, handlers: Mapping[OutboxEventType, DeliveryHandler]):
        missing = [event_type.value for event_type in OutboxEventType if event_type not in handlers]
        if missing:
            raise ValueError(f"No delivery handler registered for: {', '.join(missing)}")
        self._handlers = dict(handlers)

    def deliver(self, event_type: OutboxEventType, payload, tenant_id: str) -> None:
        self._handlers[event_type](payload, tenant_id)


def format_amount(amount: int, currency: str | None = "PHP") -> str:
    return f"{currency or 'PHP'} {amount / 100:,.2f}"


class _BookingEmails:

    def __init__(self, session_scope: SessionScope, email_sender: EmailSender):
        self.session_scope = session_scope
        self.email_sender = email_sender

    def _booking_contact(self, booking_id: str) -> tuple[str | None, str | None]:
        with self.session_scope() as db:
            booking = db.get(Booking, booking_id)
            if booking is None:
                return None, None
            return booking.customer_email, booking.customer_name

    def booking_confirmed(self, payload: BookingConfirmedPayload, tenant_id: str) -> None:
        stored_email, stored_name = self._booking_contact(payload.booking_id)
        recipient = payload.email or stored_email
        if not recipient:
            raise NonRetryableDeliveryError(
                f"[Outbox:BOOKING_CONFIRMED] Recipient email is missing for booking {payload.booking_id}"
            )

        name = (payload.customer_name or "").strip() or stored_name or "there"
        when = payload.scheduled_at or "your scheduled time"
        self.email_sender.send(
            to=[recipient],
            subject="Booking confirmed",
            html=(
                f"<p>Hi {name},</p>"
                f"<p>Your booking <strong>#{payload.booking_id}</strong> is confirmed for {when}.</p>"
            ),
            text=f"Hi {name}, your booking #{payload.booking_id} is confirmed for {when}.",
        )

    def booking_cancelled(self, payload: BookingCancelledPayload, tenant_id: str) -> None:
        # Releasing again is a no-op once the vouchers are back in the pool.
        with self.session_scope() as db:
            released = VoucherRepository(db).release_for_booking(payload.booking_id)
        if released:
            logger.info(
                "Released %s voucher(s) still held by cancelled booking %s",
                released,
                payload.booking_id,
            )

        stored_email, stored_name = self._booking_contact(payload.booking_id)
        recipient = payload.email or stored_email
        if not recipient:
            raise NonRetryableDeliveryError(
                f"[Outbox:BOOKING_CANCELLED] Recipient email is missing for booking {payload.booking_id}"
            )

        name = (payload.customer_name or "").strip() or stored_name or "there"
        reason = payload.reason.value
        self.email_sender.send(
            to=[recipient],
            subject="Booking canceled",
            html=(
                f"<p>Hi {name},</p>"
                f"<p>Your booking <strong>#{payload.booking_id}</strong> was canceled.</p>"
                f"<p>Reason: {reason}</p>"
                "<p>If you need help rebooking, reply to this email.</p>"
            ),
            text=f"Hi {name}, your booking #{payload.booking_id} was canceled. Reason: {reason}.",
        )

    def payment_confirmed(self, payload: PaymentConfirmedPayload, tenant_id: str) -> None:
        amount = format_amount(payload.amount, payload.currency)
        self.email_sender.send(
            to=[payload.email],
            subject="Payment received",
            html=(
                f"<p>Payment confirmed for booking #{payload.booking_id}.</p>"
                f"<p>Amount received: <strong>{amount}</strong></p>"
            ),
            text=f"Payment confirmed for booking #{payload.booking_id}. Amount received: {amount}.",
        )


def _manual_payment_handler(email_sender: EmailSender) -> DeliveryHandler:

    def handle(payload: ManualPaymentSubmittedPayload, tenant_id: str) -> None:
        recipients = platform_billing_emails()
        if not recipients:
            raise NonRetryableDeliveryError(
                "[Outbox:MANUAL_PAYMENT_SUBMITTED] No platform admin recipients configured"
            )

        amount = format_amount(payload.amount) if payload.amount is not None else "Not provided"
        note = f"Note: {payload.note}" if payload.note else "No note"
        proof = f"Proof URL: {payload.proof_url}" if payload.proof_url else "No proof URL"
        email_sender.send(
            to=recipients,
            subject=f"Manual payment submitted - {payload.tenant_id}",
            html=(
                "<p>A business owner submitted a manual payment reference.</p><ul>"
                f"<li>Tenant: {payload.tenant_id}</li>"
                f"<li>Invoice ID: {payload.invoice_id}</li>"
                f"<li>Reference: {payload.payment_reference}</li>"
                f"<li>Amount: {amount}</li>"
                f"<li>{note}</li>"
                f"<li>{proof}</li>"
                f"<li>Submitted at: {payload.submitted_at}</li></ul>"
            ),
            text=(
                f"Manual payment submitted. Tenant: {payload.tenant_id}. "
                f"Invoice: {payload.invoice_id}. Reference: {payload.payment_reference}. "
                f"Amount: {amount}. {note}. {proof}. Submitted at: {payload.submitted_at}."
            ),
        )

    return handle


def _social_publish_handler(
    session_scope: SessionScope,
    publisher: SocialPublisher | None,
) -> DeliveryHandler:

    def handle(payload: SocialTargetPublishPayload, tenant_id: str) -> None:
        target_id = payload.social_post_target_id

        with session_scope() as db:
            target = db.get(SocialPostTarget, target_id)
            if target is None:
                raise SocialPublishNonRetryableError(f"Social post target {target_id} was not found")
            if target.tenant_id != tenant_id:
                raise SocialPublishNonRetryableError(
                    "Social post target does not belong to the expected tenant"
                )
            if target.status == PUBLISHED:
                logger.info("Social target %s already published; skipping duplicate delivery", target_id)
                return
            if publisher is None:
                raise SocialPublishNonRetryableError("No social publisher is configured")

            platform = target.platform
            caption = target.caption
            target.status = PUBLISHING

        try:
            external_post_id = publisher.publish(platform, caption)
        except SocialPublishNonRetryableError as exc:
            with session_scope() as db:
                target = db.get(SocialPostTarget, target_id)
                target.status = SOCIAL_FAILED
                target.last_error = str(exc)
            raise

        with session_scope() as db:
            target = db.get(SocialPostTarget, target_id)
            target.status = PUBLISHED
            target.external_post_id = external_post_id
            target.published_at = utc_now()
            target.last_error = None

        logger.info("Social target %s published on %s (%s)", target_id, platform, external_post_id)

    return handle


def _ignore(payload, tenant_id: str) -> None:
    return None


def build_default_registry(
    session_scope: SessionScope,
    email_sender: EmailSender,
    social_publisher: SocialPublisher | None = None,
) -> DeliveryHandlerRegistry:
    emails = _BookingEmails(session_scope, email_sender)
    return DeliveryHandlerRegistry(
        {
            OutboxEventType.BOOKING_CREATED: _ignore,
            OutboxEventType.BOOKING_CONFIRMED: emails.booking_confirmed,
            OutboxEventType.BOOKING_CANCELLED: emails.booking_cancelled,
            OutboxEventType.PAYMENT_CONFIRMED: emails.payment_confirmed,
            OutboxEventType.MANUAL_PAYMENT_SUBMITTED: _manual_payment_handler(email_sender),
            OutboxEventType.SOCIAL_TARGET_PUBLISH: _social_publish_handler(
                session_scope, social_publisher
            ),
        }
    )
