import logging

from sqlalchemy.orm import Session

from src.application.lock_manager import ensure_lock_matches
from src.application.results import ConfirmationResult
from src.application.seat_ledger_service import SeatLedgerService, require_ids
from src.domain.exceptions import NothingToConfirmError
from src.domain.seat_ledger import validate_quantity
from src.domain.state_machine import LockStatus
from src.infrastructure.repositories.lock_repository import SeatLockRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.payment_repository import PaymentOrderRepository

logger = logging.getLogger(__name__)


class ConfirmationEngine:
    """Converts a held lock into a permanent sale, exactly once."""

    def __init__(self, db: Session, ledger: SeatLedgerService | None = None):
        self.db = db
        self.ledger = ledger or SeatLedgerService(db)
        self.lock_repository = SeatLockRepository(db)
        self.outbox_repository = OutboxRepository(db)
        self.payment_repository = PaymentOrderRepository(db)

    def confirm_booking(
        self,
        event_id: str,
        seating_category_id: str,
        quantity: int,
        lock_id: str | None = None,
    ) -> ConfirmationResult:
        require_ids(event_id=event_id, seating_id=seating_category_id)
        validate_quantity(quantity)

        def work() -> ConfirmationResult:
            if lock_id is not None:
                order = self.payment_repository.get_by_lock_id(lock_id)
                if order is not None:
                    raise NothingToConfirmError(
                        f"Seat lock is paid through payment order {order.id}; "
                        "it is confirmed when that payment is captured"
                    )
            return self.confirm_in_transaction(
                event_id,
                seating_category_id,
                quantity,
                lock_id=lock_id,
            )

        result = self.ledger.run_atomic(work)
        logger.info(
            "Seats confirmed. lock_id=%s event_id=%s seating_id=%s quantity=%s sold=%s",
            lock_id,
            event_id,
            seating_category_id,
            quantity,
            result.snapshot.seats_sold,
        )
        return result

    def confirm_in_transaction(
        self,
        event_id: str,
        seating_category_id: str,
        quantity: int,
        lock_id: str | None = None,
    ) -> ConfirmationResult:
        if lock_id is None:
            snapshot = self.ledger.apply(
                event_id,
                seating_category_id,
                lambda counts: counts.confirm(quantity),
            )
            return ConfirmationResult(quantity=quantity, snapshot=snapshot)

        lock = self.lock_repository.get_by_id(lock_id)
        ensure_lock_matches(lock, event_id, seating_category_id, quantity)

        if lock.status != LockStatus.ACTIVE or not self.lock_repository.transition(
            lock,
            LockStatus.CONFIRMED,
        ):
            raise NothingToConfirmError(
                f"Seat lock is {lock.status.value.lower()}; nothing to confirm"
            )

        snapshot = self.ledger.apply(
            event_id,
            seating_category_id,
            lambda counts: counts.confirm(lock.quantity),
        )
        self.outbox_repository.add_event(
            aggregate_type="seat_lock",
            aggregate_id=lock.id,
            event_type="SEATS_CONFIRMED",
            payload={
                "lock_id": lock.id,
                "event_id": event_id,
                "seating_id": seating_category_id,
                "seat_type": snapshot.seat_type,
                "quantity": lock.quantity,
                "requester_id": lock.requester_id,
            },
            dedupe_key=f"seat_lock:{lock.id}:confirmed",
        )
        return ConfirmationResult(quantity=quantity, snapshot=snapshot, lock_id=lock.id)
