from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class ServiceLineRequest(BaseModel):
    service_name: str = Field(min_length=1)
    price: int = Field(ge=0)


class BookingCreateRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    scheduled_start: datetime
    scheduled_end: datetime
    services: list[ServiceLineRequest] = Field(min_length=1)
    customer_name: str | None = None
    customer_email: str | None = None
    voucher_code: str | None = None
    payment_method: Literal["GATEWAY", "CASH"] = "GATEWAY"

    @model_validator(mode="after")
    def _ends_after_start(self):
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError("scheduled_end must be after scheduled_start")
        return self


class ServiceUnitResponse(BaseModel):
    id: str
    service_name: str
    price: int
    status: str


class BookingResponse(BaseModel):
    booking_id: str
    tenant_id: str
    status: str
    payment_status: str
    hold_expires_at: str | None = None
    subtotal: int
    total_discount: int
    grand_total: int
    amount_paid: int
    service_units: list[ServiceUnitResponse] = []


class PaymentAttemptCreateRequest(BaseModel):
    amount_principal: int = Field(gt=0)
    amount_charged: int | None = Field(default=None, ge=0)
    payment_intent_id: str | None = None
    currency: str = Field(default="PHP", min_length=3, max_length=8)
    expires_at: datetime | None = None


class PaymentAttemptResponse(BaseModel):
    payment_attempt_id: str
    booking_id: str
    status: str
    amount_principal: int
    amount_charged: int
    currency: str
    payment_intent_id: str | None = None


class TransitionResponse(BaseModel):
    booking_id: str
    applied: bool
    status: str | None = None
    detail: str | None = None


class ServiceUnitStatusRequest(BaseModel):
    status: Literal["IN_PROGRESS", "COMPLETED", "CANCELLED"]


class ManualPaymentRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    invoice_id: str = Field(min_length=1)
    submitted_by_user_id: str = Field(min_length=1)
    payment_reference: str = Field(min_length=1, max_length=128)
    amount: int | None = Field(default=None, gt=0)
    note: str | None = Field(default=None, max_length=500)
    proof_url: str | None = None


class ManualPaymentResponse(BaseModel):
    invoice_id: str
    status: str


class HoldSweepResponse(BaseModel):
    success: bool
    found: int
    expired: int
    errors: int
    processedAt: str


class ReconciliationResponse(BaseModel):
    success: bool
    scanned: int
    succeeded: int
    expired: int
    failed: int
    canceled: int
    mismatched: int
    skipped: int
    errors: int
    processedAt: str


class DispatchResponse(BaseModel):
    success: bool
    processed: int
    succeeded: int
    failed: int
    retried: int
    terminal_failures: int
    skipped_non_retryable: int
    skipped_claimed: int
    by_event_type: dict[str, dict[str, int]]
    processedAt: str


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    last_error: str | None = None
    next_attempt_at: str | None = None
    created_at: str
