# src/application/outbox_dispatcher.py

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from src.application.delivery_handlers import DeliveryHandlerRegistry
from src.domain.events import parse_event_type, parse_outbox_payload
from src.domain.exceptions import NonRetryableDeliveryError, OutboxPayloadError
from src.infrastructure.config import (
    OUTBOX_BATCH_SIZE,
    OUTBOX_CLAIM_TIMEOUT_SECONDS,
    OUTBOX_MAX_ATTEMPTS,
    OUTBOX_RETRY_BASE_SECONDS,
)
from src.infrastructure.db.session import SessionScope, utc_now
from src.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)

NON_RETRYABLE_PREFIX = "[SKIPPED_NON_RETRYABLE]"


@dataclass
class DispatchSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    terminal_failures: int = 0
    skipped_non_retryable: int = 0
    skipped_claimed: int = 0
    by_event_type: dict[str, dict[str, int]] = field(default_factory=dict)
    processed_at: datetime = field(default_factory=utc_now)

    def count(self, event_type: str, outcome: str) -> None:
        bucket = self.by_event_type.setdefault(
            event_type, {"processed": 0, "succeeded": 0, "failed": 0}
        )
        bucket[outcome] += 1

    def as_dict(self) -> dict:
        data = asdict(self)
        data["processed_at"] = self.processed_at.isoformat()
        return data


@dataclass(frozen=True)
class _ClaimedMessage:
    id: str
    event_type: str
    payload: str
    tenant_id: str
    attempts: int


class OutboxDispatcher:
    """
    Delivers outbox rows at least once. A row is claimed with a conditional
    update before its handler runs, so concurrent dispatchers never deliver
    the same row in parallel. Claims older than the claim timeout are
    treated as abandoned and can be taken again.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        registry: DeliveryHandlerRegistry,
        batch_size: int = OUTBOX_BATCH_SIZE,
        max_attempts: int = OUTBOX_MAX_ATTEMPTS,
        retry_base_seconds: int = OUTBOX_RETRY_BASE_SECONDS,
        claim_timeout_seconds: int = OUTBOX_CLAIM_TIMEOUT_SECONDS,
    ):
        self.session_scope = session_scope
        self.registry = registry
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    def retry_delay(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.retry_base_seconds * 2 ** (attempts - 1))

    def dispatch_batch(self, now: datetime | None = None) -> DispatchSummary:
        now = now or utc_now()
        stale_claim_before = now - self.claim_timeout
        summary = DispatchSummary(processed_at=now)

        with self.session_scope() as db:
            candidate_ids = [
                message.id
                for message in OutboxRepository(db).list_claimable(
                    now, stale_claim_before, self.batch_size
                )
            ]

        for message_id in candidate_ids:
            message = None
            try:
                message = self._claim(message_id, now, stale_claim_before)
                if message is None:
                    summary.skipped_claimed += 1
                    continue

                summary.processed += 1
                summary.count(message.event_type, "processed")
                self._deliver(message, now, summary)
            except Exception:
                # A row stuck in PROCESSING is picked up again once its claim goes stale.
                logger.exception("[Outbox] Could not process %s", message_id)
                summary.failed += 1
                if message is not None:
                    summary.count(message.event_type, "failed")

        if candidate_ids:
            logger.info(
                "[Outbox] Processed %s messages: %s success, %s failed, %s retried",
                summary.processed,
                summary.succeeded,
                summary.failed,
                summary.retried,
            )
        return summary

    def _claim(
        self,
        message_id: str,
        now: datetime,
        stale_claim_before: datetime,
    ) -> _ClaimedMessage | None:
        with self.session_scope() as db:
            repository = OutboxRepository(db)
            if repository.claim(message_id, now, stale_claim_before) == 0:
                return None
            message = repository.get_by_id(message_id)
            return _ClaimedMessage(
                id=message.id,
                event_type=message.event_type,
                payload=message.payload,
                tenant_id=message.tenant_id,
                attempts=message.attempts,
            )

    def _deliver(
        self,
        message: _ClaimedMessage,
        now: datetime,
        summary: DispatchSummary,
    ) -> None:
        try:
            event_type = parse_event_type(message.event_type)
            try:
                raw_payload = json.loads(message.payload)
            except ValueError as exc:
                raise OutboxPayloadError(
                    f"[Outbox:{message.event_type}] Payload is not valid JSON"
                ) from exc
            payload = parse_outbox_payload(event_type, raw_payload)
            self.registry.deliver(event_type, payload, message.tenant_id)

        except NonRetryableDeliveryError as exc:
            logger.error(
                "[Outbox] Non-retryable failure for %s (%s): %s",
                message.id,
                message.event_type,
                exc,
            )
            self._finish(
                message,
                lambda repo: repo.mark_failed(
                    message.id,
                    now,
                    error=f"{NON_RETRYABLE_PREFIX} {exc}",
                    attempts=message.attempts + 1,
                ),
            )
            summary.failed += 1
            summary.skipped_non_retryable += 1
            summary.count(message.event_type, "failed")
            return

        except Exception as exc:
            attempts = message.attempts + 1
            error = str(exc) or exc.__class__.__name__

            if attempts >= self.max_attempts:
                logger.exception(
                    "[Outbox] %s (%s) failed for the last time after %s attempts",
                    message.id,
                    message.event_type,
                    attempts,
                )
                self._finish(
                    message,
                    lambda repo: repo.mark_failed(message.id, now, error=error, attempts=attempts),
                )
                summary.terminal_failures += 1
            else:
                next_attempt_at = now + self.retry_delay(attempts)
                logger.warning(
                    "[Outbox] Failed to process %s (%s), retry %s at %s: %s",
                    message.id,
                    message.event_type,
                    attempts,
                    next_attempt_at.isoformat(),
                    error,
                )
                self._finish(
                    message,
                    lambda repo: repo.schedule_retry(
                        message.id,
                        error=error,
                        attempts=attempts,
                        next_attempt_at=next_attempt_at,
                    ),
                )
                summary.retried += 1
            summary.failed += 1
            summary.count(message.event_type, "failed")
            return

        self._finish(message, lambda repo: repo.mark_delivered(message.id, now))
        summary.succeeded += 1
        summary.count(message.event_type, "succeeded")

    def _finish(self, message: _ClaimedMessage, update) -> None:
        with self.session_scope() as db:
            if update(OutboxRepository(db)) == 0:
                logger.warning(
                    "[Outbox] Claim on %s was lost before its outcome was recorded",
                    message.id,
                )
