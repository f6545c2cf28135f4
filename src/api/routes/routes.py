import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from src.api.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    DispatchResponse,
    HoldSweepResponse,
    ManualPaymentRequest,
    ManualPaymentResponse,
    OutboxEventResponse,
    PaymentAttemptCreateRequest,
    PaymentAttemptResponse,
    ReconciliationResponse,
    ServiceUnitResponse,
    ServiceUnitStatusRequest,
    TransitionResponse,
)
from src.api.security import require_cron_auth
from src.application.booking_service import BookingLifecycleService, ServiceLine
from src.application.delivery_handlers import DeliveryHandlerRegistry, build_default_registry
from src.application.hold_expiry import expire_holds
from src.application.manual_payments import submit_manual_payment
from src.application.outbox_dispatcher import OutboxDispatcher
from src.application.reconciliation import PaymentReconciler
from src.application.webhook_ingestion import WebhookIngestionService
from src.domain.exceptions import (
    BookingEngineError,
    BookingNotFoundError,
    ConcurrentModificationError,
    InvalidStateTransitionError,
    ManualPaymentConflictError,
    PaymentAttemptConflictError,
    PaymentAttemptNotFoundError,
    ServiceUnitNotFoundError,
    VoucherUnavailableError,
)
from src.domain.state_machine import ServiceUnitStatus
from src.infrastructure.db.models import Booking, OutboxMessage
from src.infrastructure.db.session import SessionLocal, SessionScope, engine, get_db_session
from src.infrastructure.email import ResendEmailSender
from src.infrastructure.gateway.paymongo import PaymentGateway, PayMongoClient
from src.infrastructure.locks import AdvisoryLock, advisory_lock_for
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.outbox_repository import (
    FAILED,
    OUTBOX_STATUSES,
    OutboxRepository,
)


router = APIRouter()
logger = logging.getLogger(__name__)


# -----------------------------
# Dependencies
# -----------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_session_scope() -> SessionScope:
    return get_db_session


def get_advisory_lock() -> AdvisoryLock:
    return advisory_lock_for(engine)


def get_payment_gateway() -> PaymentGateway:
    return PayMongoClient()


def get_delivery_registry(
    session_scope: SessionScope = Depends(get_session_scope),
) -> DeliveryHandlerRegistry:
    return build_default_registry(session_scope, ResendEmailSender())


_NOT_FOUND = (BookingNotFoundError, PaymentAttemptNotFoundError, ServiceUnitNotFoundError)
_CONFLICT = (
    InvalidStateTransitionError,
    PaymentAttemptConflictError,
    VoucherUnavailableError,
    ConcurrentModificationError,
    ManualPaymentConflictError,
)


def _http_error(exc: BookingEngineError) -> HTTPException:
    if isinstance(exc, _NOT_FOUND):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, _CONFLICT):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        tenant_id=booking.tenant_id,
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        hold_expires_at=booking.hold_expires_at.isoformat() if booking.hold_expires_at else None,
        subtotal=booking.subtotal,
        total_discount=booking.total_discount,
        grand_total=booking.grand_total,
        amount_paid=booking.amount_paid,
        service_units=[
            ServiceUnitResponse(
                id=unit.id,
                service_name=unit.service_name,
                price=unit.price,
                status=unit.status.value,
            )
            for unit in booking.service_units
        ],
    )


def _outbox_response(item: OutboxMessage) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        last_error=item.last_error,
        next_attempt_at=item.next_attempt_at.isoformat() if item.next_attempt_at else None,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Booking Ledger Engine is running"}


# -----------------------------
# Gateway webhook
# -----------------------------
@router.post("/webhooks/paymongo", response_class=PlainTextResponse)
async def paymongo_webhook(
    request: Request,
    session_scope: SessionScope = Depends(get_session_scope),
    lock: AdvisoryLock = Depends(get_advisory_lock),
):
    raw_body = await request.body()
    service = WebhookIngestionService(session_scope=session_scope, lock=lock)
    outcome = await run_in_threadpool(
        service.handle,
        raw_body,
        request.headers.get("paymongo-signature"),
    )
    return PlainTextResponse(outcome.message, status_code=outcome.status_code)


# -----------------------------
# Cron triggers
# -----------------------------
@router.get(
    "/cron/expire-holds",
    response_model=HoldSweepResponse,
    dependencies=[Depends(require_cron_auth)],
)
def cron_expire_holds(session_scope: SessionScope = Depends(get_session_scope)):
    result = expire_holds(session_scope)
    return HoldSweepResponse(
        success=True,
        found=result.found,
        expired=result.expired,
        errors=result.errors,
        processedAt=result.processed_at.isoformat(),
    )


@router.get(
    "/cron/reconcile-payments",
    response_model=ReconciliationResponse,
    dependencies=[Depends(require_cron_auth)],
)
def cron_reconcile_payments(
    session_scope: SessionScope = Depends(get_session_scope),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    summary = PaymentReconciler(session_scope, gateway).run()
    data = summary.as_dict()
    data["processedAt"] = data.pop("processed_at")
    return ReconciliationResponse(success=True, **data)


@router.get(
    "/cron/process-outbox",
    response_model=DispatchResponse,
    dependencies=[Depends(require_cron_auth)],
)
def cron_process_outbox(
    session_scope: SessionScope = Depends(get_session_scope),
    registry: DeliveryHandlerRegistry = Depends(get_delivery_registry),
):
    summary = OutboxDispatcher(session_scope, registry).dispatch_batch()
    data = summary.as_dict()
    data["processedAt"] = data.pop("processed_at")
    return DispatchResponse(success=True, **data)


# -----------------------------
# Bookings
# -----------------------------
@router.post("/bookings", response_model=BookingResponse)
def create_booking(
    request: BookingCreateRequest,
    db: Session = Depends(get_db),
):
    service = BookingLifecycleService(db)

    try:
        booking = service.create_hold(
            tenant_id=request.tenant_id,
            scheduled_start=request.scheduled_start,
            scheduled_end=request.scheduled_end,
            services=[ServiceLine(line.service_name, line.price) for line in request.services],
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            voucher_code=request.voucher_code,
            payment_method=request.payment_method,
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    return _booking_response(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(booking_id: str, db: Session = Depends(get_db)):
    booking = BookingRepository(db).get_by_id(booking_id)
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Booking not found",
        )
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/payment-attempts", response_model=PaymentAttemptResponse)
def start_payment_attempt(
    booking_id: str,
    request: PaymentAttemptCreateRequest,
    db: Session = Depends(get_db),
):
    service = BookingLifecycleService(db)

    try:
        attempt = service.start_payment_attempt(
            booking_id=booking_id,
            amount_principal=request.amount_principal,
            amount_charged=request.amount_charged,
            payment_intent_id=request.payment_intent_id,
            currency=request.currency,
            expires_at=request.expires_at,
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    return PaymentAttemptResponse(
        payment_attempt_id=attempt.id,
        booking_id=attempt.booking_id,
        status=attempt.status.value,
        amount_principal=attempt.amount_principal,
        amount_charged=attempt.amount_charged,
        currency=attempt.currency,
        payment_intent_id=attempt.payment_intent_id,
    )


@router.post("/bookings/{booking_id}/cancel", response_model=TransitionResponse)
def cancel_booking(booking_id: str, db: Session = Depends(get_db)):
    try:
        result = BookingLifecycleService(db).cancel_booking(booking_id)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc

    return TransitionResponse(
        booking_id=booking_id,
        applied=result.applied,
        status=result.booking_status.value if result.booking_status else None,
        detail=result.detail,
    )


@router.post("/service-units/{unit_id}/status", response_model=ServiceUnitResponse)
def update_service_unit_status(
    unit_id: str,
    request: ServiceUnitStatusRequest,
    db: Session = Depends(get_db),
):
    try:
        unit = BookingLifecycleService(db).update_service_unit_status(
            unit_id, ServiceUnitStatus(request.status)
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc

    return ServiceUnitResponse(
        id=unit.id,
        service_name=unit.service_name,
        price=unit.price,
        status=unit.status.value,
    )


# -----------------------------
# Billing
# -----------------------------
@router.post("/billing/manual-payments", response_model=ManualPaymentResponse)
def create_manual_payment(
    request: ManualPaymentRequest,
    db: Session = Depends(get_db),
):
    try:
        submit_manual_payment(
            db,
            tenant_id=request.tenant_id,
            invoice_id=request.invoice_id,
            submitted_by_user_id=request.submitted_by_user_id,
            payment_reference=request.payment_reference,
            amount=request.amount,
            note=request.note,
            proof_url=request.proof_url,
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    return ManualPaymentResponse(invoice_id=request.invoice_id, status="SUBMITTED")


# -----------------------------
# Outbox operations
# -----------------------------
@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    if status_filter not in OUTBOX_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"status_filter must be one of {', '.join(OUTBOX_STATUSES)}",
        )

    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list_by_status(status_filter, limit=safe_limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/retry", response_model=OutboxEventResponse)
def retry_outbox_event(
    event_id: str,
    db: Session = Depends(get_db),
):
    repository = OutboxRepository(db)
    item = repository.get_by_id(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    if repository.requeue_failed(event_id) == 0:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only {FAILED} outbox events can be retried",
        )

    logger.info("Outbox event %s requeued by operator", event_id)
    return _outbox_response(repository.get_by_id(event_id))
