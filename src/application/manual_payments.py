# src/application/manual_payments.py

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from src.application.outbox import publish_event
from src.domain.events import ManualPaymentSubmittedPayload, OutboxEvent, OutboxEventType
from src.domain.exceptions import ManualPaymentConflictError
from src.infrastructure.db.models import AuditLog
from src.infrastructure.db.session import utc_now
from src.infrastructure.repositories.audit_repository import AuditRepository

logger = logging.getLogger(__name__)

INVOICE_ENTITY_TYPE = "SUBSCRIPTION_INVOICE"
MANUAL_PAYMENT_ACTION = "MANUAL_PAYMENT_SUBMITTED"


def submit_manual_payment(
    db: Session,
    tenant_id: str,
    invoice_id: str,
    submitted_by_user_id: str,
    payment_reference: str,
    amount: int | None = None,
    note: str | None = None,
    proof_url: str | None = None,
    now: datetime | None = None,
) -> AuditLog:
    """
    Records a manual payment reference against an invoice and notifies
    platform billing. One submission per invoice until it is verified.
    """
    now = now or utc_now()
    reference = payment_reference.strip()
    if not reference:
        raise ValueError("Payment reference is required")
    if amount is not None and amount <= 0:
        raise ValueError("Amount must be positive")

    audit = AuditRepository(db)
    if audit.exists(INVOICE_ENTITY_TYPE, invoice_id, MANUAL_PAYMENT_ACTION):
        raise ManualPaymentConflictError(
            "Manual payment already submitted for this invoice. "
            "Wait for verification before sending another reference."
        )

    entry = audit.record(
        entity_type=INVOICE_ENTITY_TYPE,
        entity_id=invoice_id,
        action=MANUAL_PAYMENT_ACTION,
        actor_type="USER",
        tenant_id=tenant_id,
        changes={
            "manual_payment_reference": reference,
            "manual_payment_submitted_at": now.isoformat(),
            "manual_payment_amount": amount,
            "manual_payment_note": note,
            "manual_payment_proof_url": proof_url,
            "submitted_by_user_id": submitted_by_user_id,
        },
    )

    publish_event(
        db,
        OutboxEvent(
            type=OutboxEventType.MANUAL_PAYMENT_SUBMITTED,
            aggregate_type="SubscriptionInvoice",
            aggregate_id=invoice_id,
            tenant_id=tenant_id,
            payload=ManualPaymentSubmittedPayload(
                invoice_id=invoice_id,
                tenant_id=tenant_id,
                submitted_by_user_id=submitted_by_user_id,
                payment_reference=reference,
                submitted_at=now.isoformat(),
                amount=amount,
                note=note,
                proof_url=proof_url,
            ),
            dedupe_key=f"invoice:{invoice_id}:manual_payment",
        ),
    )

    logger.info("Manual payment %s submitted for invoice %s", reference, invoice_id)
    return entry
