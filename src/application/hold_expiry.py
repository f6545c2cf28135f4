# src/application/hold_expiry.py

import logging
from dataclasses import dataclass
from datetime import datetime

from src.application.booking_service import BookingLifecycleService
from src.infrastructure.db.session import SessionScope, utc_now
from src.infrastructure.repositories.booking_repository import BookingRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HoldSweepResult:
    found: int
    expired: int
    errors: int
    processed_at: datetime


def expire_holds(session_scope: SessionScope, now: datetime | None = None) -> HoldSweepResult:
    """
    Cancels every HOLD booking whose hold_expires_at has passed, one
    transaction per booking. A booking that was paid or cancelled in the
    meantime is skipped by the conditional update.
    """
    now = now or utc_now()

    with session_scope() as db:
        booking_ids = [booking.id for booking in BookingRepository(db).list_expired_holds(now)]

    expired = 0
    errors = 0
    for booking_id in booking_ids:
        try:
            with session_scope() as db:
                result = BookingLifecycleService(db).cancel_expired_hold(booking_id, now=now)
            if result.applied:
                expired += 1
        except Exception:
            errors += 1
            logger.exception("Failed to expire hold for booking %s", booking_id)

    if booking_ids:
        logger.info(
            "Hold sweep: %s found, %s expired, %s errors",
            len(booking_ids),
            expired,
            errors,
        )

    return HoldSweepResult(
        found=len(booking_ids),
        expired=expired,
        errors=errors,
        processed_at=now,
    )
