# src/application/reconciliation.py

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta

from src.application.booking_service import (
    BookingLifecycleService,
    confirm_payment_and_promote,
)
from src.application.payment_checks import find_mismatch
from src.domain.state_machine import PaymentAttemptStatus
from src.infrastructure.config import (
    AMOUNT_MISMATCH_TOLERANCE,
    PAYMENT_CURRENCY,
    RECONCILE_BATCH_SIZE,
    RECONCILE_MIN_AGE_SECONDS,
)
from src.infrastructure.db.session import SessionScope, as_utc, utc_now
from src.infrastructure.gateway.paymongo import PaymentGateway
from src.infrastructure.repositories.payment_attempt_repository import PaymentAttemptRepository

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationSummary:
    scanned: int = 0
    succeeded: int = 0
    expired: int = 0
    failed: int = 0
    canceled: int = 0
    mismatched: int = 0
    skipped: int = 0
    errors: int = 0
    processed_at: datetime = field(default_factory=utc_now)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["processed_at"] = self.processed_at.isoformat()
        return data


@dataclass(frozen=True)
class _PendingAttempt:
    id: str
    booking_id: str
    payment_intent_id: str
    amount_charged: int
    expires_at: datetime | None


class PaymentReconciler:
    """
    Safety net for missed webhooks: polls the gateway for PENDING attempts
    and applies the same state-machine operations webhook ingestion uses.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        gateway: PaymentGateway,
        batch_size: int = RECONCILE_BATCH_SIZE,
        min_age_seconds: int = RECONCILE_MIN_AGE_SECONDS,
        expected_currency: str = PAYMENT_CURRENCY,
        amount_tolerance: int = AMOUNT_MISMATCH_TOLERANCE,
    ):
        self.session_scope = session_scope
        self.gateway = gateway
        self.batch_size = batch_size
        self.min_age = timedelta(seconds=min_age_seconds)
        self.expected_currency = expected_currency
        self.amount_tolerance = amount_tolerance

    def run(self, now: datetime | None = None) -> ReconciliationSummary:
        now = now or utc_now()
        summary = ReconciliationSummary(processed_at=now)

        with self.session_scope() as db:
            pending = [
                _PendingAttempt(
                    id=attempt.id,
                    booking_id=attempt.booking_id,
                    payment_intent_id=attempt.payment_intent_id,
                    amount_charged=attempt.amount_charged,
                    expires_at=as_utc(attempt.expires_at),
                )
                for attempt in PaymentAttemptRepository(db).list_stale_pending(
                    cutoff=now - self.min_age,
                    limit=self.batch_size,
                )
            ]

        summary.scanned = len(pending)

        for attempt in pending:
            try:
                self._reconcile(attempt, now, summary)
            except Exception:
                summary.errors += 1
                logger.exception(
                    "Failed to reconcile attempt %s (booking %s, intent %s)",
                    attempt.id,
                    attempt.booking_id,
                    attempt.payment_intent_id,
                )

        logger.info("Reconciliation finished: %s", summary.as_dict())
        return summary

    def _reconcile(
        self,
        pending: _PendingAttempt,
        now: datetime,
        summary: ReconciliationSummary,
    ) -> None:
        snapshot = self.gateway.get_payment_intent(pending.payment_intent_id)

        # The charged amount is only meaningful once the intent succeeded.
        checked = snapshot if snapshot.status == "succeeded" else replace(snapshot, amount=None)
        mismatch = find_mismatch(
            pending.amount_charged,
            checked,
            self.expected_currency,
            self.amount_tolerance,
        )
        if mismatch:
            with self.session_scope() as db:
                BookingLifecycleService(db).mark_attempt_mismatch(
                    pending.id, mismatch.reason, mismatch.details
                )
            summary.mismatched += 1
            return

        if snapshot.status == "succeeded":
            confirm_payment_and_promote(self.session_scope, pending.id, now=now)
            summary.succeeded += 1
            return

        if snapshot.status in ("failed", "canceled"):
            cause = (
                PaymentAttemptStatus.FAILED
                if snapshot.status == "failed"
                else PaymentAttemptStatus.CANCELED
            )
            with self.session_scope() as db:
                BookingLifecycleService(db).fail_or_cancel_payment(pending.id, cause)
            if cause == PaymentAttemptStatus.FAILED:
                summary.failed += 1
            else:
                summary.canceled += 1
            return

        locally_expired = pending.expires_at is not None and pending.expires_at <= now
        if snapshot.status == "expired" or locally_expired:
            with self.session_scope() as db:
                BookingLifecycleService(db).fail_or_cancel_payment(
                    pending.id, PaymentAttemptStatus.EXPIRED
                )
            summary.expired += 1
            return

        summary.skipped += 1
