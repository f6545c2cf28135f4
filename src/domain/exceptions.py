class BookingEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the Booking Ledger Engine.
    """


class InvalidStateTransitionError(BookingEngineError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class BookingNotFoundError(BookingEngineError):
    """Raised when a booking id does not resolve to a row."""


class PaymentAttemptNotFoundError(BookingEngineError):
    """Raised when a payment attempt id does not resolve to a row."""


class PaymentAttemptConflictError(BookingEngineError):
    """Raised when a booking already has a PENDING payment attempt."""


class VoucherUnavailableError(BookingEngineError):
    """Raised when a voucher is unknown, inactive or held by another booking."""


class GatewayError(BookingEngineError):
    """Transient failure talking to the payment gateway."""


class WebhookSignatureError(BookingEngineError):
    """Raised when a webhook signature header is missing, stale or wrong."""


class NonRetryableDeliveryError(BookingEngineError):
    """
    Raised by a delivery handler when redelivery can never succeed.
    The dispatcher marks the outbox row permanently failed.
    """


class OutboxPayloadError(NonRetryableDeliveryError):
    """Raised when a stored outbox payload does not match its event schema."""


class SocialPublishNonRetryableError(NonRetryableDeliveryError):
    """Raised when a social post target can never be published as requested."""


class ConcurrentModificationError(BookingEngineError):
    """
    Raised when a guarded write lost a race it cannot treat as a no-op.
    The surrounding transaction rolls back and the caller may retry.
    """


class ServiceUnitNotFoundError(BookingEngineError):
    """Raised when a service unit id does not resolve to a row."""


class ManualPaymentConflictError(BookingEngineError):
    """Raised when an invoice already has a manual payment awaiting verification."""
