import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.outbox import publish_event
from src.domain.events import (
    BookingCancelledPayload,
    BookingConfirmedPayload,
    BookingCreatedPayload,
    CancellationReason,
    OutboxEvent,
    OutboxEventType,
    PaymentConfirmedPayload,
)
from src.domain.exceptions import (
    BookingNotFoundError,
    ConcurrentModificationError,
    InvalidStateTransitionError,
    PaymentAttemptConflictError,
    PaymentAttemptNotFoundError,
    ServiceUnitNotFoundError,
    VoucherUnavailableError,
)
from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentAttemptStatus,
    PaymentStatus,
    SERVED_UNIT_STATUSES,
    ServiceUnitStatus,
    resolve_payment_status,
)
from src.infrastructure.config import HOLD_TTL_MINUTES, PAYMENT_CURRENCY
from src.infrastructure.db.models import Booking, PaymentAttempt, ServiceUnit, Voucher
from src.infrastructure.db.session import SessionScope, utc_now
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.payment_attempt_repository import PaymentAttemptRepository
from src.infrastructure.repositories.voucher_repository import VoucherRepository

logger = logging.getLogger(__name__)

BOOKING_AGGREGATE = "Booking"

CASH = "CASH"
GATEWAY = "GATEWAY"

_FAILURE_CAUSES = {
    PaymentAttemptStatus.FAILED: CancellationReason.PAYMENT_FAILED,
    PaymentAttemptStatus.CANCELED: CancellationReason.PAYMENT_CANCELED,
    PaymentAttemptStatus.EXPIRED: CancellationReason.PAYMENT_EXPIRED,
}


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of a state-machine operation. applied=False means the guarded
    update matched nothing because another actor already moved the row.
    """

    applied: bool
    booking_id: str | None = None
    booking_status: BookingStatus | None = None
    detail: str | None = None


@dataclass(frozen=True)
class ServiceLine:
    service_name: str
    price: int


def compute_discount(voucher: Voucher, subtotal: int) -> int:
    if voucher.discount_type == "PERCENTAGE":
        return min(subtotal, subtotal * voucher.discount_value // 100)
    return min(subtotal, voucher.discount_value)


class BookingLifecycleService:
    """
    Owns every booking, payment attempt and voucher transition.

    Each method runs on the caller's session; the caller commits once per
    operation. Transitions are conditional updates on current state, so a
    caller that loses a race gets applied=False instead of an error.
    """

    def __init__(self, db: Session):
        self.db = db
        self.bookings = BookingRepository(db)
        self.attempts = PaymentAttemptRepository(db)
        self.vouchers = VoucherRepository(db)

    # -----------------------------
    # Creation
    # -----------------------------
    def create_hold(
        self,
        tenant_id: str,
        scheduled_start: datetime,
        scheduled_end: datetime,
        services: Iterable[ServiceLine],
        customer_name: str | None = None,
        customer_email: str | None = None,
        voucher_code: str | None = None,
        payment_method: str = GATEWAY,
        hold_ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> Booking:
        now = now or utc_now()
        services = list(services)
        if not services:
            raise ValueError("A booking needs at least one service")
        if scheduled_end <= scheduled_start:
            raise ValueError("Booking must end after it starts")

        subtotal = sum(line.price for line in services)

        # Every booking starts as a hold; the voucher needs the booking id
        # before the final total is known.
        booking = self.bookings.create_booking(
            tenant_id=tenant_id,
            status=BookingStatus.HOLD,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            hold_expires_at=now + (hold_ttl or timedelta(minutes=HOLD_TTL_MINUTES)),
            customer_name=customer_name,
            customer_email=customer_email,
        )
        booking_id = booking.id

        for line in services:
            self.bookings.add_service_unit(booking, line.service_name, line.price)

        discount = 0
        if voucher_code:
            if self.vouchers.reserve(voucher_code, tenant_id, booking_id) == 0:
                raise VoucherUnavailableError(
                    f"Voucher {voucher_code} is not available"
                )
            discount = compute_discount(self.vouchers.get_by_code(voucher_code), subtotal)

        booking = self.bookings.get_by_id(booking_id)
        booking.subtotal = subtotal
        booking.total_discount = discount
        booking.grand_total = subtotal - discount
        booking.payment_status = resolve_payment_status(booking.grand_total, 0)

        # Cash and fully discounted bookings skip the hold.
        immediate = payment_method == CASH or booking.grand_total == 0
        if immediate:
            booking.status = BookingStatus.ACCEPTED
            booking.hold_expires_at = None
        self.db.flush()

        publish_event(
            self.db,
            OutboxEvent(
                type=OutboxEventType.BOOKING_CREATED,
                aggregate_type=BOOKING_AGGREGATE,
                aggregate_id=booking_id,
                tenant_id=tenant_id,
                payload=BookingCreatedPayload(
                    booking_id=booking_id,
                    status=booking.status.value,
                    customer_name=customer_name,
                    email=customer_email,
                    scheduled_at=scheduled_start.isoformat(),
                    estimated_end=scheduled_end.isoformat(),
                    grand_total=booking.grand_total,
                ),
                dedupe_key=f"booking:{booking_id}:created",
            ),
        )
        if immediate:
            self._publish_confirmed(booking)

        logger.info(
            "Booking %s created in %s for tenant %s (grand_total=%s)",
            booking_id,
            booking.status.value,
            tenant_id,
            booking.grand_total,
        )
        return booking

    def start_payment_attempt(
        self,
        booking_id: str,
        amount_principal: int,
        amount_charged: int | None = None,
        payment_intent_id: str | None = None,
        currency: str = PAYMENT_CURRENCY,
        expires_at: datetime | None = None,
    ) -> PaymentAttempt:
        booking = self.bookings.get_by_id(booking_id, for_update=True)
        if not booking:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if booking.status not in (BookingStatus.HOLD, BookingStatus.ACCEPTED):
            raise PaymentAttemptConflictError(
                f"Cannot collect payment for booking in status {booking.status.value}"
            )

        outstanding = booking.grand_total - booking.amount_paid
        if amount_principal <= 0 or amount_principal > outstanding:
            raise ValueError(
                f"Payment principal must be between 1 and {outstanding}"
            )

        if self.attempts.get_pending_for_booking(booking_id):
            raise PaymentAttemptConflictError(
                f"Booking {booking_id} already has a pending payment attempt"
            )

        try:
            attempt = self.attempts.create(
                booking_id=booking_id,
                amount_principal=amount_principal,
                amount_charged=amount_principal if amount_charged is None else amount_charged,
                currency=currency.upper(),
                payment_intent_id=payment_intent_id,
                expires_at=expires_at,
            )
        except IntegrityError as exc:
            raise PaymentAttemptConflictError(
                f"Booking {booking_id} already has a pending payment attempt"
            ) from exc

        logger.info(
            "Payment attempt %s started for booking %s (intent=%s)",
            attempt.id,
            booking_id,
            payment_intent_id,
        )
        return attempt

    # -----------------------------
    # Transitions
    # -----------------------------
    def cancel_expired_hold(
        self,
        booking_id: str,
        now: datetime | None = None,
    ) -> TransitionResult:
        now = now or utc_now()

        if self.bookings.cancel_expired_hold(booking_id, now) == 0:
            return TransitionResult(applied=False, booking_id=booking_id, detail="not an expired hold")

        self._after_hold_cancelled(
            booking_id,
            reason=CancellationReason.HOLD_EXPIRED,
            pending_attempt_status=PaymentAttemptStatus.EXPIRED,
        )
        return TransitionResult(
            applied=True,
            booking_id=booking_id,
            booking_status=BookingStatus.CANCELLED,
        )

    def cancel_booking(self, booking_id: str) -> TransitionResult:
        booking = self.bookings.get_by_id(booking_id)
        if not booking:
            raise BookingNotFoundError(f"Booking {booking_id} not found")

        BookingStateMachine.validate_transition(booking.status, BookingStatus.CANCELLED)

        if self.bookings.cancel_hold(booking_id) == 0:
            return TransitionResult(applied=False, booking_id=booking_id, detail="booking already left HOLD")

        self._after_hold_cancelled(
            booking_id,
            reason=CancellationReason.MANUAL_CANCEL,
            pending_attempt_status=PaymentAttemptStatus.CANCELED,
        )
        return TransitionResult(
            applied=True,
            booking_id=booking_id,
            booking_status=BookingStatus.CANCELLED,
        )

    def confirm_payment(
        self,
        attempt_id: str,
        paid_amount: int | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        now = now or utc_now()

        attempt = self.attempts.get_by_id(attempt_id, for_update=True)
        if not attempt:
            raise PaymentAttemptNotFoundError(f"Payment attempt {attempt_id} not found")

        booking_id = attempt.booking_id
        if attempt.status == PaymentAttemptStatus.SUCCEEDED:
            logger.info("Payment attempt %s already succeeded; confirm is a no-op", attempt_id)
            return TransitionResult(applied=False, booking_id=booking_id, detail="attempt not pending")
        if attempt.status != PaymentAttemptStatus.PENDING:
            # The gateway collected money for an attempt this side already closed.
            logger.error(
                "Payment received for %s attempt %s (booking %s, intent %s, amount %s %s); "
                "manual refund or reconciliation required",
                attempt.status.value,
                attempt_id,
                booking_id,
                attempt.payment_intent_id,
                attempt.amount_charged if paid_amount is None else paid_amount,
                attempt.currency,
            )
            return TransitionResult(applied=False, booking_id=booking_id, detail="attempt already closed")

        amount = attempt.amount_principal if paid_amount is None else paid_amount
        if amount < 0:
            raise ValueError("Paid amount cannot be negative")
        currency = attempt.currency

        if self.attempts.mark_succeeded(attempt_id, paid_at=now) == 0:
            return TransitionResult(applied=False, booking_id=booking_id, detail="attempt not pending")

        booking = self.bookings.get_by_id(booking_id, for_update=True)
        confirmed = False

        if booking.status == BookingStatus.HOLD:
            next_amount, next_status = self._next_totals(booking, amount)
            if self.bookings.accept_hold(booking_id, next_amount, next_status) == 1:
                confirmed = True
            booking = self.bookings.get_by_id(booking_id)

        if not confirmed:
            next_amount, next_status = self._next_totals(booking, amount)
            rows = self.bookings.apply_payment(
                booking_id,
                expected_amount_paid=booking.amount_paid,
                amount_paid=next_amount,
                payment_status=next_status,
            )
            if rows == 0:
                raise ConcurrentModificationError(
                    f"Booking {booking_id} amount changed while applying attempt {attempt_id}"
                )

        booking = self.bookings.get_by_id(booking_id)
        if confirmed:
            self._publish_confirmed(booking)

        if booking.customer_email:
            publish_event(
                self.db,
                OutboxEvent(
                    type=OutboxEventType.PAYMENT_CONFIRMED,
                    aggregate_type=BOOKING_AGGREGATE,
                    aggregate_id=booking_id,
                    tenant_id=booking.tenant_id,
                    payload=PaymentConfirmedPayload(
                        booking_id=booking_id,
                        email=booking.customer_email,
                        amount=amount,
                        currency=currency,
                        payment_attempt_id=attempt_id,
                    ),
                    dedupe_key=f"payment_attempt:{attempt_id}:confirmed",
                ),
            )

        logger.info(
            "Payment attempt %s confirmed; booking %s is %s/%s (amount_paid=%s)",
            attempt_id,
            booking_id,
            booking.status.value,
            booking.payment_status.value,
            booking.amount_paid,
        )
        return TransitionResult(
            applied=True,
            booking_id=booking_id,
            booking_status=booking.status,
        )

    def fail_or_cancel_payment(
        self,
        attempt_id: str,
        cause: PaymentAttemptStatus,
        reason: CancellationReason | None = None,
    ) -> TransitionResult:
        if cause not in _FAILURE_CAUSES:
            raise ValueError(f"{cause} is not a failure outcome")
        reason = reason or _FAILURE_CAUSES[cause]

        attempt = self.attempts.get_by_id(attempt_id, for_update=True)
        if not attempt:
            raise PaymentAttemptNotFoundError(f"Payment attempt {attempt_id} not found")

        booking_id = attempt.booking_id
        if attempt.status != PaymentAttemptStatus.PENDING:
            return TransitionResult(applied=False, booking_id=booking_id, detail="attempt not pending")

        if self.attempts.mark_terminal(attempt_id, cause, reason=reason.value) == 0:
            return TransitionResult(applied=False, booking_id=booking_id, detail="attempt not pending")

        booking = self.bookings.get_by_id(booking_id, for_update=True)
        # A stale failure must never undo a booking another attempt already paid for.
        if booking.status != BookingStatus.HOLD:
            logger.info(
                "Attempt %s marked %s; booking %s left as %s",
                attempt_id,
                cause.value,
                booking_id,
                booking.status.value,
            )
            return TransitionResult(applied=True, booking_id=booking_id, booking_status=booking.status)

        if self.bookings.cancel_hold(booking_id) == 1:
            self._after_hold_cancelled(
                booking_id,
                reason=reason,
                pending_attempt_status=PaymentAttemptStatus.CANCELED,
            )

        booking = self.bookings.get_by_id(booking_id)
        return TransitionResult(applied=True, booking_id=booking_id, booking_status=booking.status)

    def mark_attempt_mismatch(
        self,
        attempt_id: str,
        reason: str,
        details: dict,
    ) -> TransitionResult:
        """
        Data-integrity failure: the gateway reported something other than what
        was charged. The attempt is failed with diagnostics and the booking is
        left for an operator.
        """
        attempt = self.attempts.get_by_id(attempt_id)
        if not attempt:
            raise PaymentAttemptNotFoundError(f"Payment attempt {attempt_id} not found")
        booking_id = attempt.booking_id

        rows = self.attempts.mark_terminal(
            attempt_id,
            PaymentAttemptStatus.FAILED,
            reason=reason,
            details=details,
        )
        if rows == 0:
            return TransitionResult(applied=False, booking_id=booking_id, detail="attempt not pending")

        logger.error(
            "Payment attempt %s for booking %s failed integrity check: %s %s",
            attempt_id,
            booking_id,
            reason,
            details,
        )
        return TransitionResult(applied=True, booking_id=booking_id, detail=reason)

    def promote_to_completed_if_eligible(self, booking_id: str) -> bool:
        booking = self.bookings.get_by_id(booking_id)
        if not booking or booking.status != BookingStatus.ACCEPTED:
            return False
        if self.bookings.count_unserved_units(booking_id) > 0:
            return False

        promoted = self.bookings.complete_if_accepted(booking_id) == 1
        if promoted:
            logger.info("Booking %s promoted to COMPLETED", booking_id)
        return promoted

    def update_service_unit_status(
        self,
        unit_id: str,
        status: ServiceUnitStatus,
    ) -> ServiceUnit:
        unit = self.bookings.get_service_unit(unit_id)
        if not unit:
            raise ServiceUnitNotFoundError(f"Service unit {unit_id} not found")
        if unit.status in SERVED_UNIT_STATUSES:
            raise InvalidStateTransitionError(unit.status.value, status.value)

        booking_id = unit.booking_id
        if self.bookings.update_service_unit_status(unit_id, status) == 0:
            raise ConcurrentModificationError(
                f"Service unit {unit_id} was served by another request"
            )
        self.promote_to_completed_if_eligible(booking_id)
        return self.bookings.get_service_unit(unit_id)

    # -----------------------------
    # Helpers
    # -----------------------------
    @staticmethod
    def _next_totals(booking: Booking, amount: int) -> tuple[int, PaymentStatus]:
        next_amount = min(booking.grand_total, booking.amount_paid + amount)
        return next_amount, resolve_payment_status(booking.grand_total, next_amount)

    def _publish_confirmed(self, booking: Booking) -> None:
        publish_event(
            self.db,
            OutboxEvent(
                type=OutboxEventType.BOOKING_CONFIRMED,
                aggregate_type=BOOKING_AGGREGATE,
                aggregate_id=booking.id,
                tenant_id=booking.tenant_id,
                payload=BookingConfirmedPayload(
                    booking_id=booking.id,
                    status=BookingStatus.ACCEPTED.value,
                    customer_name=booking.customer_name,
                    email=booking.customer_email,
                    scheduled_at=booking.scheduled_start.isoformat(),
                    grand_total=booking.grand_total,
                ),
                dedupe_key=f"booking:{booking.id}:confirmed",
            ),
        )

    def _after_hold_cancelled(
        self,
        booking_id: str,
        reason: CancellationReason,
        pending_attempt_status: PaymentAttemptStatus,
    ) -> None:
        """
        Runs only after this transaction won the HOLD -> CANCELLED update,
        so vouchers are released and the event emitted once per booking.
        """
        self.attempts.close_pending_for_booking(
            booking_id,
            status=pending_attempt_status,
            reason=reason.value,
        )
        released = self.vouchers.release_for_booking(booking_id)

        booking = self.bookings.get_by_id(booking_id)
        publish_event(
            self.db,
            OutboxEvent(
                type=OutboxEventType.BOOKING_CANCELLED,
                aggregate_type=BOOKING_AGGREGATE,
                aggregate_id=booking_id,
                tenant_id=booking.tenant_id,
                payload=BookingCancelledPayload(
                    booking_id=booking_id,
                    reason=reason,
                    status=BookingStatus.CANCELLED.value,
                    email=booking.customer_email,
                    customer_name=booking.customer_name,
                ),
                dedupe_key=f"booking:{booking_id}:cancelled",
            ),
        )
        logger.info(
            "Booking %s cancelled (%s); %s voucher(s) released",
            booking_id,
            reason.value,
            released,
        )


def confirm_payment_and_promote(
    session_scope: SessionScope,
    attempt_id: str,
    paid_amount: int | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """
    Confirms in one transaction, then evaluates COMPLETED promotion in a
    second one once the payment is durable.
    """
    with session_scope() as db:
        result = BookingLifecycleService(db).confirm_payment(attempt_id, paid_amount, now=now)

    if result.applied and result.booking_id:
        with session_scope() as db:
            BookingLifecycleService(db).promote_to_completed_if_eligible(result.booking_id)

    return result
