

class SeatLedgerError(Exception):
    """
    Base exception for all domain-level errors
    inside the seat ledger.
    """

    code = "SEAT_LEDGER_ERROR"


class BookingValidationError(SeatLedgerError):
    """Raised when a booking request is malformed."""

    code = "VALIDATION_ERROR"


class NotFoundError(SeatLedgerError):
    """Raised when an event, seating category, lock or order is missing."""

    code = "NOT_FOUND"


class InsufficientInventoryError(SeatLedgerError):
    """Raised when no seats are available."""

    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, remaining: int, requested: int):
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            f"Only {max(remaining, 0)} seats available. You requested {requested}"
        )


class NothingToConfirmError(SeatLedgerError):
    """
    Raised when a confirm or release finds no matching outstanding lock.
    Covers both "already confirmed" and "never locked".
    """

    code = "NOTHING_TO_CONFIRM"


class UpstreamPaymentError(SeatLedgerError):
    """Raised when the payment gateway rejects or fails a call."""

    code = "UPSTREAM_PAYMENT_ERROR"


class ConcurrencyConflictError(SeatLedgerError):
    """Raised when a conditional update lost a race."""

    code = "CONCURRENCY_CONFLICT"


class InvalidStateTransitionError(SeatLedgerError):
    """
    Raised when an illegal lock or payment state transition is attempted.
    """

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class IdempotencyConflictError(SeatLedgerError):
    """Raised when an idempotent request conflicts with previous data."""

    code = "IDEMPOTENCY_CONFLICT"
