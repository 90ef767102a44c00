# src/application/results.py

from dataclasses import dataclass, field
from datetime import datetime

from src.infrastructure.db.models import PaymentOrder, SeatingCategory


@dataclass(frozen=True)
class LedgerSnapshot:
    event_id: str
    seating_category_id: str
    seat_type: str
    total_seats: int
    locked_seats: int
    seats_sold: int
    remaining_seats: int
    status: str
    is_active: bool = True
    price: int = 0

    @classmethod
    def from_category(cls, category: SeatingCategory) -> "LedgerSnapshot":
        counts = category.counts
        return cls(
            event_id=category.event_id,
            seating_category_id=category.id,
            seat_type=category.seat_type,
            total_seats=counts.total_seats,
            locked_seats=counts.locked_seats,
            seats_sold=counts.seats_sold,
            remaining_seats=counts.remaining,
            status=counts.status,
            is_active=category.is_active,
            price=category.price,
        )


@dataclass(frozen=True)
class LockResult:
    lock_id: str
    quantity: int
    expires_at: datetime
    snapshot: LedgerSnapshot


@dataclass(frozen=True)
class ConfirmationResult:
    quantity: int
    snapshot: LedgerSnapshot
    lock_id: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    lock: LockResult
    order: PaymentOrder


@dataclass
class ReconciliationResult:
    order: PaymentOrder
    already_reconciled: bool = False
    snapshot: LedgerSnapshot | None = None
    needs_refund: bool = False
    refund_id: str | None = None


@dataclass
class SweepReport:
    expired_orders: list[str] = field(default_factory=list)
    released_locks: list[str] = field(default_factory=list)
    refunded_orders: list[str] = field(default_factory=list)
    errors: int = 0
