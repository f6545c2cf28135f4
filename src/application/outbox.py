# src/application/outbox.py

import logging

from sqlalchemy.orm import Session

from src.domain.events import OutboxEvent
from src.infrastructure.db.models import OutboxMessage
from src.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)


def publish_event(db: Session, event: OutboxEvent) -> OutboxMessage | None:
    """
    Publishes an event to the outbox on the caller's session, so the row is
    committed if and only if the surrounding state change commits.

    Returns None when an event with the same dedupe key was already written.
    """
    repository = OutboxRepository(db)

    if event.dedupe_key and repository.exists_with_dedupe_key(event.dedupe_key):
        logger.info(
            "Outbox event %s already recorded for dedupe key %s",
            event.type.value,
            event.dedupe_key,
        )
        return None

    return repository.add(
        event_type=event.type.value,
        payload=event.payload.model_dump(mode="json"),
        tenant_id=event.tenant_id,
        aggregate_type=event.aggregate_type,
        aggregate_id=event.aggregate_id,
        dedupe_key=event.dedupe_key,
    )
