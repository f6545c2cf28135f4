# src/infrastructure/repositories/outbox_repository.py

import json
from datetime import datetime

from sqlalchemy import and_, or_, select, update

from src.infrastructure.db.models import OutboxMessage
from src.infrastructure.repositories.base import Repository


PENDING = "PENDING"
PROCESSING = "PROCESSING"
DELIVERED = "DELIVERED"
FAILED = "FAILED"

OUTBOX_STATUSES = (PENDING, PROCESSING, DELIVERED, FAILED)


class OutboxRepository(Repository):

    def exists_with_dedupe_key(self, dedupe_key: str) -> bool:
        self.db.flush()
        stmt = select(OutboxMessage.id).where(OutboxMessage.dedupe_key == dedupe_key)
        return self.db.execute(stmt).first() is not None

    def add(
        self,
        event_type: str,
        payload: dict,
        tenant_id: str,
        aggregate_type: str,
        aggregate_id: str,
        dedupe_key: str | None = None,
    ) -> OutboxMessage:
        message = OutboxMessage(
            event_type=event_type,
            payload=json.dumps(payload, sort_keys=True),
            tenant_id=tenant_id,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            dedupe_key=dedupe_key,
            status=PENDING,
            attempts=0,
        )
        self.db.add(message)
        return message

    def get_by_id(self, message_id: str) -> OutboxMessage | None:
        stmt = select(OutboxMessage).where(OutboxMessage.id == message_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_by_status(self, status: str, limit: int = 100) -> list[OutboxMessage]:
        stmt = (
            select(OutboxMessage)
            .where(OutboxMessage.status == status)
            .order_by(OutboxMessage.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def _claimable(self, now: datetime, stale_claim_before: datetime):
        return or_(
            and_(
                OutboxMessage.status == PENDING,
                or_(
                    OutboxMessage.next_attempt_at.is_(None),
                    OutboxMessage.next_attempt_at <= now,
                ),
            ),
            and_(
                OutboxMessage.status == PROCESSING,
                OutboxMessage.claimed_at < stale_claim_before,
            ),
        )

    def list_claimable(
        self,
        now: datetime,
        stale_claim_before: datetime,
        limit: int,
    ) -> list[OutboxMessage]:
        stmt = (
            select(OutboxMessage)
            .where(self._claimable(now, stale_claim_before))
            .order_by(OutboxMessage.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def claim(self, message_id: str, now: datetime, stale_claim_before: datetime) -> int:
        return self.conditional_update(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .where(self._claimable(now, stale_claim_before))
            .values(status=PROCESSING, claimed_at=now)
        )

    def mark_delivered(self, message_id: str, now: datetime) -> int:
        return self.conditional_update(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .where(OutboxMessage.status == PROCESSING)
            .values(
                status=DELIVERED,
                processed_at=now,
                claimed_at=None,
                last_error=None,
            )
        )

    def mark_failed(
        self,
        message_id: str,
        now: datetime,
        error: str,
        attempts: int,
    ) -> int:
        return self.conditional_update(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .where(OutboxMessage.status == PROCESSING)
            .values(
                status=FAILED,
                processed_at=now,
                claimed_at=None,
                attempts=attempts,
                last_error=error,
            )
        )

    def schedule_retry(
        self,
        message_id: str,
        error: str,
        attempts: int,
        next_attempt_at: datetime,
    ) -> int:
        return self.conditional_update(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .where(OutboxMessage.status == PROCESSING)
            .values(
                status=PENDING,
                claimed_at=None,
                attempts=attempts,
                last_error=error,
                next_attempt_at=next_attempt_at,
            )
        )

    def requeue_failed(self, message_id: str) -> int:
        return self.conditional_update(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .where(OutboxMessage.status == FAILED)
            .values(
                status=PENDING,
                attempts=0,
                next_attempt_at=None,
                processed_at=None,
            )
        )
