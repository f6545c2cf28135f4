# src/domain/events.py

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.domain.exceptions import OutboxPayloadError


class OutboxEventType(str, Enum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    MANUAL_PAYMENT_SUBMITTED = "MANUAL_PAYMENT_SUBMITTED"
    SOCIAL_TARGET_PUBLISH = "SOCIAL_TARGET_PUBLISH"


class CancellationReason(str, Enum):
    HOLD_EXPIRED = "HOLD_EXPIRED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_CANCELED = "PAYMENT_CANCELED"
    PAYMENT_EXPIRED = "PAYMENT_EXPIRED"
    MANUAL_CANCEL = "MANUAL_CANCEL"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class BookingCreatedPayload(_Payload):
    booking_id: str = Field(min_length=1)
    status: str
    customer_name: Optional[str] = None
    email: Optional[str] = None
    scheduled_at: Optional[str] = None
    estimated_end: Optional[str] = None
    grand_total: Optional[int] = None


class BookingConfirmedPayload(_Payload):
    booking_id: str = Field(min_length=1)
    status: str
    customer_name: Optional[str] = None
    email: Optional[str] = None
    scheduled_at: Optional[str] = None
    grand_total: Optional[int] = None


class BookingCancelledPayload(_Payload):
    booking_id: str = Field(min_length=1)
    reason: CancellationReason
    status: str
    email: Optional[str] = None
    customer_name: Optional[str] = None


class PaymentConfirmedPayload(_Payload):
    booking_id: str = Field(min_length=1)
    email: str = Field(min_length=1)
    amount: int = Field(ge=0)
    currency: Optional[str] = None
    payment_attempt_id: Optional[str] = None


class ManualPaymentSubmittedPayload(_Payload):
    invoice_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    submitted_by_user_id: str = Field(min_length=1)
    payment_reference: str = Field(min_length=1)
    submitted_at: str
    amount: Optional[int] = None
    note: Optional[str] = None
    proof_url: Optional[str] = None


class SocialTargetPublishPayload(_Payload):
    social_post_target_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)


PAYLOAD_MODELS: Dict[OutboxEventType, Type[_Payload]] = {
    OutboxEventType.BOOKING_CREATED: BookingCreatedPayload,
    OutboxEventType.BOOKING_CONFIRMED: BookingConfirmedPayload,
    OutboxEventType.BOOKING_CANCELLED: BookingCancelledPayload,
    OutboxEventType.PAYMENT_CONFIRMED: PaymentConfirmedPayload,
    OutboxEventType.MANUAL_PAYMENT_SUBMITTED: ManualPaymentSubmittedPayload,
    OutboxEventType.SOCIAL_TARGET_PUBLISH: SocialTargetPublishPayload,
}


@dataclass(frozen=True)
class OutboxEvent:
    """
    Envelope written to the outbox in the same transaction
    as the state change it describes.
    """

    type: OutboxEventType
    aggregate_type: str
    aggregate_id: str
    tenant_id: str
    payload: _Payload
    dedupe_key: Optional[str] = None

    def __post_init__(self) -> None:
        expected = PAYLOAD_MODELS[self.type]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.type.value} requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )


def parse_event_type(value: str) -> OutboxEventType:
    try:
        return OutboxEventType(value)
    except ValueError as exc:
        raise OutboxPayloadError(f"[Outbox:{value}] Unsupported event type") from exc


def parse_outbox_payload(event_type: OutboxEventType, raw_payload: Any) -> _Payload:
    if not isinstance(raw_payload, dict):
        raise OutboxPayloadError(f"[Outbox:{event_type.value}] Payload must be an object")

    try:
        return PAYLOAD_MODELS[event_type].model_validate(raw_payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        raise OutboxPayloadError(
            f"[Outbox:{event_type.value}] Invalid field \"{field}\": {first['msg']}"
        ) from exc
