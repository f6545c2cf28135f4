# tests/unit/test_state_machine.py

import pytest

from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStatus,
    resolve_payment_status,
)
from src.domain.exceptions import InvalidStateTransitionError


# ---------------------
# VALID TRANSITIONS
# ---------------------

def test_valid_happy_path():
    assert BookingStateMachine.can_transition(
        BookingStatus.HOLD,
        BookingStatus.ACCEPTED,
    )

    assert BookingStateMachine.can_transition(
        BookingStatus.ACCEPTED,
        BookingStatus.COMPLETED,
    )


def test_hold_can_be_cancelled():
    assert BookingStateMachine.can_transition(
        BookingStatus.HOLD,
        BookingStatus.CANCELLED,
    )


# ---------------------
# INVALID TRANSITIONS
# ---------------------

def test_cannot_skip_acceptance():
    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.HOLD,
            BookingStatus.COMPLETED,
        )


def test_accepted_booking_cannot_be_cancelled():
    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.ACCEPTED,
            BookingStatus.CANCELLED,
        )


def test_terminal_state_cancelled():
    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.CANCELLED,
            BookingStatus.ACCEPTED,
        )


def test_terminal_state_completed():
    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.COMPLETED,
            BookingStatus.HOLD,
        )


def test_invalid_type_guard():
    with pytest.raises(TypeError):
        BookingStateMachine.validate_transition(
            "HOLD",  # invalid type
            BookingStatus.ACCEPTED,
        )


# ---------------------
# PAYMENT STATUS
# ---------------------

def test_payment_status_from_totals():
    assert resolve_payment_status(30000, 0) == PaymentStatus.UNPAID
    assert resolve_payment_status(30000, 10000) == PaymentStatus.PARTIALLY_PAID
    assert resolve_payment_status(30000, 30000) == PaymentStatus.PAID
    assert resolve_payment_status(30000, 35000) == PaymentStatus.PAID


def test_free_booking_is_paid():
    assert resolve_payment_status(0, 0) == PaymentStatus.PAID


def test_payment_status_is_monotonic_in_amount_paid():
    order = [PaymentStatus.UNPAID, PaymentStatus.PARTIALLY_PAID, PaymentStatus.PAID]
    ranks = [order.index(resolve_payment_status(300, paid)) for paid in range(0, 301, 25)]
    assert ranks == sorted(ranks)
