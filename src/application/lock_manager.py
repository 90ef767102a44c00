import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from src.application.results import LedgerSnapshot, LockResult
from src.application.seat_ledger_service import SeatLedgerService, require_ids
from src.domain.exceptions import BookingValidationError, NothingToConfirmError
from src.domain.seat_ledger import validate_quantity
from src.domain.state_machine import LockStatus
from src.infrastructure.db.models import SeatLock
from src.infrastructure.repositories.lock_repository import SeatLockRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)


def ensure_lock_matches(
    lock: SeatLock,
    event_id: str,
    seating_category_id: str,
    quantity: int,
) -> None:
    if lock.event_id != event_id or lock.seating_category_id != seating_category_id:
        raise BookingValidationError("Seat lock does not belong to this seating category")
    if lock.quantity != quantity:
        raise BookingValidationError(
            f"Seat lock holds {lock.quantity} seats, not {quantity}"
        )


class LockManager:
    """Temporary holds on seats while a payment is pending."""

    def __init__(self, db: Session, ledger: SeatLedgerService | None = None):
        self.db = db
        self.ledger = ledger or SeatLedgerService(db)
        self.lock_repository = SeatLockRepository(db)
        self.outbox_repository = OutboxRepository(db)

    def acquire_lock(
        self,
        event_id: str,
        seating_category_id: str,
        quantity: int,
        requester_id: str | None = None,
        now: datetime | None = None,
    ) -> LockResult:
        require_ids(event_id=event_id, seating_id=seating_category_id)
        validate_quantity(quantity)
        expires_at = (now or datetime.now(timezone.utc)) + self.ledger.settings.lock_ttl

        def work() -> LockResult:
            snapshot = self.ledger.apply(
                event_id,
                seating_category_id,
                lambda counts: counts.lock(quantity),
                require_bookable=True,
            )
            lock = self.lock_repository.create_lock(
                event_id=event_id,
                seating_category_id=seating_category_id,
                quantity=quantity,
                requester_id=requester_id,
                expires_at=expires_at,
            )
            return LockResult(
                lock_id=lock.id,
                quantity=quantity,
                expires_at=expires_at,
                snapshot=snapshot,
            )

        result = self.ledger.run_atomic(work)
        logger.info(
            "Seats locked. lock_id=%s event_id=%s seating_id=%s quantity=%s remaining=%s",
            result.lock_id,
            event_id,
            seating_category_id,
            quantity,
            result.snapshot.remaining_seats,
        )
        return result

    def release_lock(
        self,
        event_id: str,
        seating_category_id: str,
        quantity: int,
        lock_id: str | None = None,
        reason: str = "CANCELLED",
    ) -> LedgerSnapshot:
        """
        Return held seats to the pool.

        Without ``lock_id`` this is a bare saturating counter release.
        With ``lock_id`` exactly that lock's seats are returned, once.
        """

        require_ids(event_id=event_id, seating_id=seating_category_id)
        validate_quantity(quantity)

        snapshot = self.ledger.run_atomic(
            lambda: self.release_in_transaction(
                event_id,
                seating_category_id,
                quantity,
                lock_id=lock_id,
                reason=reason,
            )
        )
        logger.info(
            "Seats released. lock_id=%s event_id=%s seating_id=%s quantity=%s reason=%s",
            lock_id,
            event_id,
            seating_category_id,
            quantity,
            reason,
        )
        return snapshot

    def release_in_transaction(
        self,
        event_id: str,
        seating_category_id: str,
        quantity: int,
        lock_id: str | None = None,
        reason: str = "CANCELLED",
    ) -> LedgerSnapshot:
        if lock_id is None:
            return self.ledger.apply(
                event_id,
                seating_category_id,
                lambda counts: counts.release(quantity),
            )

        lock = self.lock_repository.get_by_id(lock_id)
        ensure_lock_matches(lock, event_id, seating_category_id, quantity)

        if lock.status == LockStatus.ACTIVE:
            if self.lock_repository.transition(
                lock,
                LockStatus.RELEASED,
                release_reason=reason,
            ):
                snapshot = self.ledger.apply(
                    event_id,
                    seating_category_id,
                    lambda counts: counts.release(lock.quantity),
                )
                self.outbox_repository.add_event(
                    aggregate_type="seat_lock",
                    aggregate_id=lock.id,
                    event_type="SEATS_RELEASED",
                    payload={
                        "lock_id": lock.id,
                        "event_id": event_id,
                        "seating_id": seating_category_id,
                        "quantity": lock.quantity,
                        "reason": reason,
                    },
                    dedupe_key=f"seat_lock:{lock.id}:released",
                )
                return snapshot

        if lock.status == LockStatus.CONFIRMED:
            raise NothingToConfirmError("Seat lock already confirmed; nothing to release")

        logger.warning("Seat lock %s already released; ignoring repeat release.", lock.id)
        return self.ledger.get_availability(event_id, seating_category_id)
