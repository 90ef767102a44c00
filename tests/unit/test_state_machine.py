# tests/unit/test_state_machine.py

import pytest

from src.domain.state_machine import (
    LockStateMachine,
    LockStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from src.domain.exceptions import InvalidStateTransitionError


# ---------------------
# VALID TRANSITIONS
# ---------------------

def test_lock_can_be_confirmed_or_released():
    assert LockStateMachine.can_transition(
        LockStatus.ACTIVE,
        LockStatus.CONFIRMED,
    )

    assert LockStateMachine.can_transition(
        LockStatus.ACTIVE,
        LockStatus.RELEASED,
    )


def test_payment_happy_path():
    assert PaymentStateMachine.can_transition(
        PaymentStatus.PENDING,
        PaymentStatus.CAPTURED,
    )

    assert PaymentStateMachine.can_transition(
        PaymentStatus.CAPTURED,
        PaymentStatus.REFUNDED,
    )


# ---------------------
# INVALID TRANSITIONS
# ---------------------

def test_no_transition_out_of_sold():
    assert LockStateMachine.is_terminal(LockStatus.CONFIRMED)

    with pytest.raises(InvalidStateTransitionError):
        LockStateMachine.validate_transition(
            LockStatus.CONFIRMED,
            LockStatus.RELEASED,
        )


def test_released_lock_cannot_be_confirmed():
    assert LockStateMachine.is_terminal(LockStatus.RELEASED)

    with pytest.raises(InvalidStateTransitionError):
        LockStateMachine.validate_transition(
            LockStatus.RELEASED,
            LockStatus.CONFIRMED,
        )


def test_failed_payment_is_terminal():
    assert PaymentStateMachine.is_terminal(PaymentStatus.FAILED)

    with pytest.raises(InvalidStateTransitionError):
        PaymentStateMachine.validate_transition(
            PaymentStatus.FAILED,
            PaymentStatus.CAPTURED,
        )


def test_cannot_refund_pending_payment():
    with pytest.raises(InvalidStateTransitionError):
        PaymentStateMachine.validate_transition(
            PaymentStatus.PENDING,
            PaymentStatus.REFUNDED,
        )


def test_settled_means_left_pending():
    assert not PaymentStateMachine.is_settled(PaymentStatus.PENDING)
    assert PaymentStateMachine.is_settled(PaymentStatus.CAPTURED)
    assert PaymentStateMachine.is_settled(PaymentStatus.REFUNDED)


def test_invalid_type_guard():
    with pytest.raises(TypeError):
        LockStateMachine.validate_transition(
            "ACTIVE",  # invalid type
            LockStatus.CONFIRMED,
        )

    with pytest.raises(TypeError):
        PaymentStateMachine.can_transition(
            LockStatus.ACTIVE,
            PaymentStatus.CAPTURED,
        )
