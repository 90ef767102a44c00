# src/domain/seat_ledger.py

from dataclasses import dataclass, replace

from src.domain.exceptions import (
    BookingValidationError,
    InsufficientInventoryError,
    NothingToConfirmError,
)

FAST_FILLING_RATIO = 0.2


class SeatStatus:
    SOLD_OUT = "sold_out"
    FAST_FILLING = "fast_filling"
    AVAILABLE = "available"


def validate_quantity(quantity) -> int:
    # bool is an int subclass; True must not book one seat.
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise BookingValidationError("quantity must be a positive integer")
    return quantity


@dataclass(frozen=True)
class SeatCounts:
    """
    Capacity counters of one seating category.

    Every operation returns a new value and never mutates in place, so a
    caller can compute the next state and persist it with a conditional
    update.
    """

    total_seats: int
    locked_seats: int = 0
    seats_sold: int = 0

    def __post_init__(self):
        if self.total_seats < 0 or self.locked_seats < 0 or self.seats_sold < 0:
            raise ValueError("seat counters must be non-negative")
        if self.seats_sold + self.locked_seats > self.total_seats:
            raise ValueError(
                f"seats_sold ({self.seats_sold}) + locked_seats "
                f"({self.locked_seats}) exceeds total_seats ({self.total_seats})"
            )

    @property
    def remaining(self) -> int:
        return self.total_seats - self.seats_sold - self.locked_seats

    @property
    def status(self) -> str:
        remaining = self.remaining
        if remaining <= 0:
            return SeatStatus.SOLD_OUT
        if remaining <= self.total_seats * FAST_FILLING_RATIO:
            return SeatStatus.FAST_FILLING
        return SeatStatus.AVAILABLE

    def lock(self, quantity: int) -> "SeatCounts":
        validate_quantity(quantity)
        if self.remaining < quantity:
            raise InsufficientInventoryError(
                remaining=self.remaining,
                requested=quantity,
            )
        return replace(self, locked_seats=self.locked_seats + quantity)

    def release(self, quantity: int) -> "SeatCounts":
        """Saturating: never drives locked_seats below zero."""
        validate_quantity(quantity)
        return replace(self, locked_seats=max(self.locked_seats - quantity, 0))

    def confirm(self, quantity: int) -> "SeatCounts":
        validate_quantity(quantity)
        if self.locked_seats < quantity:
            raise NothingToConfirmError(
                "Seats not locked or already confirmed"
            )
        return replace(
            self,
            locked_seats=self.locked_seats - quantity,
            seats_sold=self.seats_sold + quantity,
        )
