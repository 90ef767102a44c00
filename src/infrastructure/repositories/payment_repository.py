# src/infrastructure/repositories/payment_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import PaymentOrder, PaymentWebhookEvent, SeatLock
from src.domain.exceptions import NotFoundError
from src.domain.state_machine import LockStatus, PaymentStateMachine, PaymentStatus


class PaymentOrderRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, order_id: str) -> PaymentOrder:
        stmt = (
            select(PaymentOrder)
            .where(PaymentOrder.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = self.db.execute(stmt).scalar_one_or_none()

        if not order:
            raise NotFoundError("Payment order not found")

        return order

    def get_by_remote_order_id(self, remote_order_id: str) -> PaymentOrder | None:
        stmt = (
            select(PaymentOrder)
            .where(PaymentOrder.remote_order_id == remote_order_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_lock_id(self, lock_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.lock_id == lock_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_payment_id(self, payment_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.payment_id == payment_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_order(
        self,
        lock_id: str,
        requester_id: str | None,
        remote_order_id: str,
        amount_paise: int,
        currency: str,
        expires_at: datetime,
    ) -> PaymentOrder:
        order = PaymentOrder(
            lock_id=lock_id,
            requester_id=requester_id,
            remote_order_id=remote_order_id,
            amount_paise=amount_paise,
            currency=currency,
            status=PaymentStatus.PENDING,
            expires_at=expires_at,
        )

        self.db.add(order)
        self.db.flush()
        return order

    def transition(
        self,
        order: PaymentOrder,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        **values,
    ) -> bool:
        """
        Compare-and-set on the status column.
        Only the first caller to observe from_status wins; everyone else
        gets False and must treat the order as already settled.
        """

        PaymentStateMachine.validate_transition(from_status, to_status)

        result = self.db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.id == order.id)
            .where(PaymentOrder.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )

        self.db.refresh(order)
        return result.rowcount == 1

    def find_expired_pending(
        self,
        now: datetime,
        limit: int = 100,
    ) -> list[PaymentOrder]:
        stmt = (
            select(PaymentOrder)
            .where(PaymentOrder.status == PaymentStatus.PENDING)
            .where(PaymentOrder.expires_at < now)
            .order_by(PaymentOrder.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def find_captured_unbacked(self, limit: int = 100) -> list[PaymentOrder]:
        """Captured payments whose lock was released instead of confirmed."""

        stmt = (
            select(PaymentOrder)
            .join(SeatLock, SeatLock.id == PaymentOrder.lock_id)
            .where(PaymentOrder.status == PaymentStatus.CAPTURED)
            .where(SeatLock.status == LockStatus.RELEASED)
            .order_by(PaymentOrder.updated_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_webhook_event(
        self,
        provider: str,
        payment_id: str,
        event: str,
    ) -> PaymentWebhookEvent | None:
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.provider == provider)
            .where(PaymentWebhookEvent.payment_id == payment_id)
            .where(PaymentWebhookEvent.event == event)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def record_webhook_event(
        self,
        provider: str,
        payment_id: str,
        event: str,
        payment_order_id: str | None,
        payload_hash: str,
        status: str,
    ) -> PaymentWebhookEvent:
        record = PaymentWebhookEvent(
            provider=provider,
            payment_id=payment_id,
            event=event,
            payment_order_id=payment_order_id,
            payload_hash=payload_hash,
            status=status,
        )
        self.db.add(record)
        self.db.flush()
        return record
