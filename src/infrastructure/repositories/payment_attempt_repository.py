# src/infrastructure/repositories/payment_attempt_repository.py

import json
from datetime import datetime

from sqlalchemy import select, update

from src.domain.state_machine import PaymentAttemptStatus
from src.infrastructure.db.models import PaymentAttempt
from src.infrastructure.repositories.base import Repository


class PaymentAttemptRepository(Repository):

    def get_by_id(
        self,
        attempt_id: str,
        for_update: bool = False,
    ) -> PaymentAttempt | None:
        stmt = select(PaymentAttempt).where(PaymentAttempt.id == attempt_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_latest_by_intent_id(self, payment_intent_id: str) -> PaymentAttempt | None:
        stmt = (
            select(PaymentAttempt)
            .where(PaymentAttempt.payment_intent_id == payment_intent_id)
            .order_by(PaymentAttempt.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_pending_for_booking(self, booking_id: str) -> PaymentAttempt | None:
        stmt = (
            select(PaymentAttempt)
            .where(PaymentAttempt.booking_id == booking_id)
            .where(PaymentAttempt.status == PaymentAttemptStatus.PENDING)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_stale_pending(self, cutoff: datetime, limit: int) -> list[PaymentAttempt]:
        stmt = (
            select(PaymentAttempt)
            .where(PaymentAttempt.status == PaymentAttemptStatus.PENDING)
            .where(PaymentAttempt.payment_intent_id.is_not(None))
            .where(PaymentAttempt.created_at < cutoff)
            .order_by(PaymentAttempt.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create(
        self,
        booking_id: str,
        amount_principal: int,
        amount_charged: int,
        currency: str,
        payment_intent_id: str | None,
        expires_at: datetime | None,
    ) -> PaymentAttempt:
        attempt = PaymentAttempt(
            booking_id=booking_id,
            status=PaymentAttemptStatus.PENDING,
            amount_principal=amount_principal,
            amount_charged=amount_charged,
            currency=currency,
            payment_intent_id=payment_intent_id,
            expires_at=expires_at,
        )
        self.db.add(attempt)
        self.db.flush()
        return attempt

    # -----------------------------
    # Conditional transitions
    # -----------------------------
    def mark_succeeded(self, attempt_id: str, paid_at: datetime) -> int:
        return self.conditional_update(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id)
            .where(PaymentAttempt.status == PaymentAttemptStatus.PENDING)
            .values(status=PaymentAttemptStatus.SUCCEEDED, paid_at=paid_at)
        )

    def mark_terminal(
        self,
        attempt_id: str,
        status: PaymentAttemptStatus,
        reason: str | None = None,
        details: dict | None = None,
    ) -> int:
        values = {"status": status}
        if reason is not None:
            values["failure_reason"] = reason
        if details is not None:
            values["failure_details"] = json.dumps(details, sort_keys=True)

        return self.conditional_update(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id)
            .where(PaymentAttempt.status == PaymentAttemptStatus.PENDING)
            .values(**values)
        )

    def close_pending_for_booking(
        self,
        booking_id: str,
        status: PaymentAttemptStatus,
        reason: str,
    ) -> int:
        return self.conditional_update(
            update(PaymentAttempt)
            .where(PaymentAttempt.booking_id == booking_id)
            .where(PaymentAttempt.status == PaymentAttemptStatus.PENDING)
            .values(status=status, failure_reason=reason)
        )
