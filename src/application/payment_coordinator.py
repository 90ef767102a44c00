import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.application.confirmation_engine import ConfirmationEngine
from src.application.lock_manager import LockManager
from src.application.results import (
    CheckoutResult,
    ReconciliationResult,
    SweepReport,
)
from src.application.seat_ledger_service import SeatLedgerService, require_ids
from src.domain.exceptions import (
    BookingValidationError,
    ConcurrencyConflictError,
    IdempotencyConflictError,
    NothingToConfirmError,
    SeatLedgerError,
    UpstreamPaymentError,
)
from src.domain.state_machine import (
    LockStatus,
    PaymentOutcome,
    PaymentStateMachine,
    PaymentStatus,
)
from src.infrastructure.db.models import PaymentOrder, SeatLock
from src.infrastructure.payments.gateway import PaymentGateway, RemoteOrder
from src.infrastructure.repositories.lock_repository import SeatLockRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.payment_repository import PaymentOrderRepository

logger = logging.getLogger(__name__)

PAYMENT_RETRY_MESSAGE = "Payment failed. Please retry the booking."


class PaymentOrderCoordinator:
    """
    Ties a remote payment order to one seat lock and settles it.

    The client's verify call and the gateway webhook both end in
    ``reconcile``; whichever compare-and-sets the order out of PENDING first
    drives the ledger, the other observes a settled order and does nothing.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        ledger: SeatLedgerService | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.ledger = ledger or SeatLedgerService(db)
        self.settings = self.ledger.settings
        self.lock_manager = LockManager(db, self.ledger)
        self.confirmation_engine = ConfirmationEngine(db, self.ledger)
        self.lock_repository = SeatLockRepository(db)
        self.payment_repository = PaymentOrderRepository(db)
        self.outbox_repository = OutboxRepository(db)

    def start_checkout(
        self,
        event_id: str,
        seating_category_id: str,
        quantity: int,
        requester_id: str | None = None,
    ) -> CheckoutResult:
        lock = self.lock_manager.acquire_lock(
            event_id,
            seating_category_id,
            quantity,
            requester_id=requester_id,
        )
        order = self.create_order_for_lock(lock.lock_id)
        return CheckoutResult(lock=lock, order=order)

    def create_order_for_lock(self, lock_id: str) -> PaymentOrder:
        require_ids(lock_id=lock_id)
        lock = self.lock_repository.get_by_id(lock_id)

        existing = self.payment_repository.get_by_lock_id(lock.id)
        if existing:
            return existing
        if lock.status != LockStatus.ACTIVE:
            raise NothingToConfirmError(
                f"Seat lock is {lock.status.value.lower()}; cannot create a payment order"
            )

        category = self.ledger.seat_repository.get_category(
            lock.event_id,
            lock.seating_category_id,
        )
        amount_paise = category.price * lock.quantity * 100
        currency = self.settings.currency

        try:
            remote = self.gateway.create_remote_order(
                amount=amount_paise,
                currency=currency,
                receipt=lock.id,
                notes={
                    "lock_id": lock.id,
                    "event_id": lock.event_id,
                    "seating_id": lock.seating_category_id,
                    "quantity": str(lock.quantity),
                },
            )
        except UpstreamPaymentError:
            self._abandon_lock(lock.id)
            raise

        try:
            order = self.ledger.run_atomic(
                lambda: self._persist_order(lock.id, remote, amount_paise, currency)
            )
        except IntegrityError as exc:
            # A concurrent request saved its order for this lock first.
            winner = self.payment_repository.get_by_lock_id(lock.id)
            if winner is not None:
                logger.info(
                    "Payment order for lock created concurrently. lock_id=%s order_id=%s",
                    lock.id,
                    winner.id,
                )
                return winner
            self._abandon_lock(lock.id)
            raise UpstreamPaymentError(
                f"Could not save the payment order. {PAYMENT_RETRY_MESSAGE}"
            ) from exc
        except (SeatLedgerError, SQLAlchemyError) as exc:
            self._abandon_lock(lock.id)
            raise UpstreamPaymentError(
                f"Could not save the payment order. {PAYMENT_RETRY_MESSAGE}"
            ) from exc

        logger.info(
            "Payment order created. order_id=%s remote_order_id=%s lock_id=%s amount_paise=%s",
            order.id,
            order.remote_order_id,
            lock.id,
            amount_paise,
        )
        return order

    def _abandon_lock(self, lock_id: str) -> None:
        lock = self.lock_repository.get_by_id(lock_id)
        if lock.status != LockStatus.ACTIVE:
            return

        logger.warning(
            "Payment order creation failed; releasing lock. lock_id=%s",
            lock.id,
        )
        try:
            self.lock_manager.release_lock(
                lock.event_id,
                lock.seating_category_id,
                lock.quantity,
                lock_id=lock.id,
                reason="PAYMENT_ORDER_FAILED",
            )
        except NothingToConfirmError:
            logger.info("Lock %s settled before it could be released.", lock.id)

    def _persist_order(
        self,
        lock_id: str,
        remote: RemoteOrder,
        amount_paise: int,
        currency: str,
    ) -> PaymentOrder:
        lock = self.lock_repository.get_by_id(lock_id)
        if lock.status != LockStatus.ACTIVE:
            raise NothingToConfirmError("Seat lock expired before the payment order was saved")

        return self.payment_repository.create_order(
            lock_id=lock.id,
            requester_id=lock.requester_id,
            remote_order_id=remote.remote_order_id,
            amount_paise=amount_paise,
            currency=currency,
            expires_at=lock.expires_at,
        )

    def get_order(self, order_id: str) -> PaymentOrder:
        require_ids(order_id=order_id)
        return self.payment_repository.get_by_id(order_id)

    def get_lock(self, order: PaymentOrder) -> SeatLock:
        return self.lock_repository.get_by_id(order.lock_id)

    def reconcile(
        self,
        order_id: str,
        outcome: PaymentOutcome | str,
        payment_id: str | None = None,
        signature: str | None = None,
        remote_order_id: str | None = None,
        authenticated: bool = False,
        reason: str | None = None,
    ) -> ReconciliationResult:
        require_ids(order_id=order_id)
        try:
            outcome = PaymentOutcome(outcome)
        except ValueError as exc:
            raise BookingValidationError(f"Unknown payment outcome: {outcome}") from exc

        order = self.payment_repository.get_by_id(order_id)
        if PaymentStateMachine.is_settled(order.status):
            if (
                outcome == PaymentOutcome.CAPTURED
                and order.status == PaymentStatus.FAILED
                and payment_id
                and payment_id != order.payment_id
            ):
                refund_id = self._refund_late_capture(
                    order,
                    payment_id,
                    signature=signature,
                    remote_order_id=remote_order_id,
                    authenticated=authenticated,
                )
                return ReconciliationResult(
                    order=order,
                    already_reconciled=True,
                    refund_id=refund_id,
                )
            logger.info(
                "Payment order already %s; skipping %s. order_id=%s",
                order.status.value,
                outcome.value,
                order.id,
            )
            return ReconciliationResult(order=order, already_reconciled=True)

        if outcome != PaymentOutcome.CAPTURED:
            return self._settle_failed(order.id, reason or outcome.value.upper())

        if remote_order_id is not None and remote_order_id != order.remote_order_id:
            raise BookingValidationError("Order id does not match this payment order.")
        if not payment_id:
            raise BookingValidationError("payment_id is required to capture a payment")

        consumed = self.payment_repository.get_by_payment_id(payment_id)
        if consumed and consumed.id != order.id:
            raise IdempotencyConflictError("Payment id already consumed by another order.")

        if not authenticated:
            if not signature:
                raise BookingValidationError("signature is required to capture a payment")
            if not self.gateway.verify_signature(order.remote_order_id, payment_id, signature):
                result = self._settle_failed(order.id, "INVALID_SIGNATURE")
                if result.already_reconciled:
                    return result
                raise UpstreamPaymentError(f"Invalid payment signature. {PAYMENT_RETRY_MESSAGE}")

        return self._settle_captured(order.id, payment_id, signature)

    def _settle_captured(
        self,
        order_id: str,
        payment_id: str,
        signature: str | None,
    ) -> ReconciliationResult:

        def work() -> ReconciliationResult:
            order = self.payment_repository.get_by_id(order_id)
            if not self.payment_repository.transition(
                order,
                PaymentStatus.PENDING,
                PaymentStatus.CAPTURED,
                payment_id=payment_id,
                payment_signature=signature,
            ):
                return ReconciliationResult(order=order, already_reconciled=True)

            lock = self.lock_repository.get_by_id(order.lock_id)
            if lock.status == LockStatus.RELEASED:
                # Seats were reclaimed before the capture landed; keep the
                # capture and refund it once this unit commits.
                return ReconciliationResult(order=order, needs_refund=True)

            if lock.status == LockStatus.CONFIRMED:
                # Seats for this lock are already sold; the capture pays for them.
                self._add_captured_event(order, lock, payment_id)
                return ReconciliationResult(order=order)

            try:
                confirmation = self.confirmation_engine.confirm_in_transaction(
                    lock.event_id,
                    lock.seating_category_id,
                    lock.quantity,
                    lock_id=lock.id,
                )
            except NothingToConfirmError as exc:
                raise ConcurrencyConflictError("Seat lock changed during capture") from exc

            self._add_captured_event(order, lock, payment_id)
            return ReconciliationResult(order=order, snapshot=confirmation.snapshot)

        try:
            result = self.ledger.run_atomic(work)
        except IntegrityError as exc:
            raise IdempotencyConflictError(
                "Payment id already consumed by another order."
            ) from exc

        if result.already_reconciled:
            logger.info("Payment order %s settled concurrently; no-op.", order_id)
            return result

        if result.needs_refund:
            logger.warning(
                "Captured payment for a released lock; refunding. order_id=%s payment_id=%s",
                order_id,
                payment_id,
            )
            try:
                result.order = self._refund(result.order, reason="LOCK_RELEASED_BEFORE_CAPTURE")
            except UpstreamPaymentError:
                # The sweeper retries captured orders whose lock was released.
                logger.exception("Refund of orphaned capture failed. order_id=%s", order_id)
            return result

        logger.info(
            "Payment captured and seats confirmed. order_id=%s payment_id=%s",
            order_id,
            payment_id,
        )
        return result

    def _add_captured_event(self, order: PaymentOrder, lock: SeatLock, payment_id: str) -> None:
        self.outbox_repository.add_event(
            aggregate_type="payment_order",
            aggregate_id=order.id,
            event_type="PAYMENT_CAPTURED",
            payload={
                "order_id": order.id,
                "lock_id": lock.id,
                "payment_id": payment_id,
                "amount_paise": order.amount_paise,
                "currency": order.currency,
                "requester_id": order.requester_id,
            },
            dedupe_key=f"payment_order:{order.id}:captured",
        )

    def _refund_late_capture(
        self,
        order: PaymentOrder,
        payment_id: str,
        signature: str | None,
        remote_order_id: str | None,
        authenticated: bool,
    ) -> str | None:
        """
        Return money captured against an order that already failed.

        The seats were released when the order failed, so the payment backs
        nothing. A refund failure propagates; the caller (or the gateway's
        webhook redelivery) retries, and the outbox key keeps it to one refund.
        """

        if remote_order_id is not None and remote_order_id != order.remote_order_id:
            raise BookingValidationError("Order id does not match this payment order.")
        if not authenticated and (
            not signature
            or not self.gateway.verify_signature(order.remote_order_id, payment_id, signature)
        ):
            logger.warning(
                "Unverified capture for a failed order ignored. order_id=%s payment_id=%s",
                order.id,
                payment_id,
            )
            return None

        consumed = self.payment_repository.get_by_payment_id(payment_id)
        if consumed and consumed.id != order.id:
            raise IdempotencyConflictError("Payment id already consumed by another order.")

        dedupe_key = f"payment_order:{order.id}:late_refund:{payment_id}"
        if self.outbox_repository.has_event(dedupe_key):
            logger.info(
                "Late capture already refunded. order_id=%s payment_id=%s",
                order.id,
                payment_id,
            )
            return None

        logger.warning(
            "Capture arrived for a failed order; refunding. order_id=%s payment_id=%s",
            order.id,
            payment_id,
        )
        refund_id = self.gateway.refund(
            payment_id,
            notes={"order_id": order.id, "reason": "CAPTURED_AFTER_FAILURE"},
        )

        def work() -> None:
            self.outbox_repository.add_event(
                aggregate_type="payment_order",
                aggregate_id=order.id,
                event_type="PAYMENT_REFUNDED",
                payload={
                    "order_id": order.id,
                    "payment_id": payment_id,
                    "refund_id": refund_id,
                    "amount_paise": order.amount_paise,
                    "reason": "CAPTURED_AFTER_FAILURE",
                },
                dedupe_key=dedupe_key,
            )

        self.ledger.run_atomic(work)
        logger.info(
            "Late capture refunded. order_id=%s payment_id=%s refund_id=%s",
            order.id,
            payment_id,
            refund_id,
        )
        return refund_id

    def _settle_failed(self, order_id: str, reason: str) -> ReconciliationResult:

        def work() -> ReconciliationResult:
            order = self.payment_repository.get_by_id(order_id)
            if not self.payment_repository.transition(
                order,
                PaymentStatus.PENDING,
                PaymentStatus.FAILED,
                failure_reason=reason,
            ):
                return ReconciliationResult(order=order, already_reconciled=True)

            lock = self.lock_repository.get_by_id(order.lock_id)
            snapshot = None
            if lock.status == LockStatus.ACTIVE:
                snapshot = self.lock_manager.release_in_transaction(
                    lock.event_id,
                    lock.seating_category_id,
                    lock.quantity,
                    lock_id=lock.id,
                    reason=f"PAYMENT_{reason}",
                )

            self.outbox_repository.add_event(
                aggregate_type="payment_order",
                aggregate_id=order.id,
                event_type="PAYMENT_FAILED",
                payload={
                    "order_id": order.id,
                    "lock_id": lock.id,
                    "reason": reason,
                    "requester_id": order.requester_id,
                },
                dedupe_key=f"payment_order:{order.id}:failed",
            )
            return ReconciliationResult(order=order, snapshot=snapshot)

        result = self.ledger.run_atomic(work)
        if not result.already_reconciled:
            logger.info(
                "Payment order failed and seats released. order_id=%s reason=%s",
                order_id,
                reason,
            )
        return result

    def refund_order(self, order_id: str, amount_paise: int | None = None) -> PaymentOrder:
        """Refund a captured payment. Sold seats stay sold."""

        require_ids(order_id=order_id)
        order = self.payment_repository.get_by_id(order_id)
        PaymentStateMachine.validate_transition(order.status, PaymentStatus.REFUNDED)
        if amount_paise is not None and not 0 < amount_paise <= order.amount_paise:
            raise BookingValidationError("Refund amount must be positive and not exceed the payment")
        return self._refund(order, reason="REQUESTED", amount_paise=amount_paise)

    def _refund(
        self,
        order: PaymentOrder,
        reason: str,
        amount_paise: int | None = None,
    ) -> PaymentOrder:
        refund_id = self.gateway.refund(
            order.payment_id,
            amount=amount_paise,
            notes={"order_id": order.id, "reason": reason},
        )

        def work() -> PaymentOrder:
            fresh = self.payment_repository.get_by_id(order.id)
            if self.payment_repository.transition(
                fresh,
                PaymentStatus.CAPTURED,
                PaymentStatus.REFUNDED,
                refund_id=refund_id,
                failure_reason=reason,
            ):
                self.outbox_repository.add_event(
                    aggregate_type="payment_order",
                    aggregate_id=fresh.id,
                    event_type="PAYMENT_REFUNDED",
                    payload={
                        "order_id": fresh.id,
                        "payment_id": fresh.payment_id,
                        "refund_id": refund_id,
                        "amount_paise": amount_paise or fresh.amount_paise,
                        "reason": reason,
                    },
                    dedupe_key=f"payment_order:{fresh.id}:refunded",
                )
            return fresh

        refunded = self.ledger.run_atomic(work)
        logger.info(
            "Payment refunded. order_id=%s refund_id=%s reason=%s",
            order.id,
            refund_id,
            reason,
        )
        return refunded

    def expire_stale(self, now: datetime | None = None) -> SweepReport:
        """
        Reclaim abandoned holds: pending orders past expiry are reconciled as
        expired, orderless locks past expiry are released, and captures that
        lost their seats are refunded.
        """

        now = now or datetime.now(timezone.utc)
        report = SweepReport()

        for order in self.payment_repository.find_expired_pending(now):
            try:
                result = self.reconcile(order.id, PaymentOutcome.EXPIRED)
            except SeatLedgerError:
                logger.exception("Failed to expire payment order %s", order.id)
                report.errors += 1
                continue
            if not result.already_reconciled:
                report.expired_orders.append(order.id)

        for lock in self.lock_repository.find_expired_unordered(now):
            try:
                self.lock_manager.release_lock(
                    lock.event_id,
                    lock.seating_category_id,
                    lock.quantity,
                    lock_id=lock.id,
                    reason="EXPIRED",
                )
            except SeatLedgerError:
                logger.exception("Failed to release expired lock %s", lock.id)
                report.errors += 1
                continue
            report.released_locks.append(lock.id)

        for order in self.payment_repository.find_captured_unbacked():
            try:
                self._refund(order, reason="LOCK_RELEASED_BEFORE_CAPTURE")
            except SeatLedgerError:
                logger.exception("Failed to refund unbacked payment order %s", order.id)
                report.errors += 1
                continue
            report.refunded_orders.append(order.id)

        logger.info(
            "Sweep finished. expired_orders=%s released_locks=%s refunded_orders=%s errors=%s",
            len(report.expired_orders),
            len(report.released_locks),
            len(report.refunded_orders),
            report.errors,
        )
        return report
