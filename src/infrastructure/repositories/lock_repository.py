# src/infrastructure/repositories/lock_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update, exists

from src.infrastructure.db.models import SeatLock, PaymentOrder
from src.domain.exceptions import NotFoundError
from src.domain.state_machine import LockStateMachine, LockStatus


class SeatLockRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, lock_id: str) -> SeatLock:
        stmt = (
            select(SeatLock)
            .where(SeatLock.id == lock_id)
            .execution_options(populate_existing=True)
        )
        lock = self.db.execute(stmt).scalar_one_or_none()

        if not lock:
            raise NotFoundError("Seat lock not found")

        return lock

    def create_lock(
        self,
        event_id: str,
        seating_category_id: str,
        quantity: int,
        requester_id: str | None,
        expires_at: datetime,
    ) -> SeatLock:
        lock = SeatLock(
            event_id=event_id,
            seating_category_id=seating_category_id,
            quantity=quantity,
            requester_id=requester_id,
            status=LockStatus.ACTIVE,
            expires_at=expires_at,
        )

        self.db.add(lock)
        self.db.flush()
        return lock

    def transition(
        self,
        lock: SeatLock,
        to_status: LockStatus,
        **values,
    ) -> bool:
        """
        Conditional update from ACTIVE.
        Returns False when another caller already moved the lock on.
        """

        LockStateMachine.validate_transition(LockStatus.ACTIVE, to_status)

        result = self.db.execute(
            update(SeatLock)
            .where(SeatLock.id == lock.id)
            .where(SeatLock.status == LockStatus.ACTIVE)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )

        self.db.refresh(lock)
        return result.rowcount == 1

    def find_expired_unordered(
        self,
        now: datetime,
        limit: int = 100,
    ) -> list[SeatLock]:
        """Active locks past expiry that never got a payment order."""

        has_order = exists().where(PaymentOrder.lock_id == SeatLock.id)
        stmt = (
            select(SeatLock)
            .where(SeatLock.status == LockStatus.ACTIVE)
            .where(SeatLock.expires_at < now)
            .where(~has_order)
            .order_by(SeatLock.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def category_has_locks(self, seating_category_id: str) -> bool:
        stmt = select(
            exists().where(SeatLock.seating_category_id == seating_category_id)
        )
        return bool(self.db.execute(stmt).scalar())
