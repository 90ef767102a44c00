# src/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from src.domain.exceptions import InvalidStateTransitionError


class LockStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CONFIRMED = "CONFIRMED"
    RELEASED = "RELEASED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentOutcome(str, Enum):
    CAPTURED = "captured"
    FAILED = "failed"
    EXPIRED = "expired"


class _StateMachine:
    """
    Shared lifecycle controller.
    Subclasses declare the status enum and the legal state transitions.
    """

    _STATUS_TYPE: type = Enum
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set[Enum]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class LockStateMachine(_StateMachine):
    """
    A lock is either active (counted in locked_seats), confirmed
    (converted to seats_sold) or released (seats returned, no sale).
    """

    _STATUS_TYPE = LockStatus
    _ALLOWED_TRANSITIONS: Dict[LockStatus, Set[LockStatus]] = {
        LockStatus.ACTIVE: {
            LockStatus.CONFIRMED,
            LockStatus.RELEASED,
        },
        LockStatus.CONFIRMED: set(),
        LockStatus.RELEASED: set(),
    }


class PaymentStateMachine(_StateMachine):
    """
    Payment orders leave PENDING exactly once.
    Refunds are layered on top of a captured payment.
    """

    _STATUS_TYPE = PaymentStatus
    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
        },
        PaymentStatus.CAPTURED: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.FAILED: set(),
        PaymentStatus.REFUNDED: set(),
    }

    @classmethod
    def is_settled(cls, status: PaymentStatus) -> bool:
        """True once the order has left PENDING."""
        cls._ensure_valid_status(status)
        return status != PaymentStatus.PENDING
