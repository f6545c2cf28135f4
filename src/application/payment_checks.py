# src/application/payment_checks.py

from dataclasses import dataclass

from src.infrastructure.gateway.paymongo import PaymentIntentSnapshot

UNEXPECTED_CURRENCY = "UNEXPECTED_CURRENCY"
AMOUNT_MISMATCH = "AMOUNT_MISMATCH"


@dataclass(frozen=True)
class IntegrityMismatch:
    reason: str
    details: dict


def find_mismatch(
    expected_amount: int,
    snapshot: PaymentIntentSnapshot,
    expected_currency: str,
    amount_tolerance: int,
) -> IntegrityMismatch | None:
    """
    Compares what the gateway reports with what the attempt charged.
    Fields the gateway left out are not held against the payment.
    """
    if snapshot.currency and snapshot.currency != expected_currency.upper():
        return IntegrityMismatch(
            reason=UNEXPECTED_CURRENCY,
            details={
                "expected_currency": expected_currency.upper(),
                "currency": snapshot.currency,
            },
        )

    if snapshot.amount is not None:
        delta = abs(snapshot.amount - expected_amount)
        if delta > amount_tolerance:
            return IntegrityMismatch(
                reason=AMOUNT_MISMATCH,
                details={
                    "expected_amount": expected_amount,
                    "paid_amount": snapshot.amount,
                    "delta": delta,
                },
            )

    return None
