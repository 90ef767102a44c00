from datetime import datetime
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError, TimeoutError as SQLAlchemyTimeoutError

from src.infrastructure.config import Settings, get_settings
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.db.models import Event, OutboxEvent, PaymentOrder
from src.infrastructure.payments.gateway import PaymentGateway, get_payment_gateway
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.application.confirmation_engine import ConfirmationEngine
from src.application.lock_manager import LockManager, ensure_lock_matches
from src.application.payment_coordinator import PaymentOrderCoordinator
from src.application.results import LedgerSnapshot
from src.application.seat_ledger_service import SeatLedgerService
from src.application.webhook_service import PaymentWebhookHandler
from src.domain.exceptions import BookingValidationError
from src.domain.state_machine import PaymentOutcome
from src.api.schemas.schemas import (
    SeatLockRequest,
    SeatLedgerResponse,
    EventCreate,
    EventResponse,
    SeatingCategoryResponse,
    CategoryActivationRequest,
    CategoryRemovalResponse,
    PaymentOrderCreate,
    PaymentOrderResponse,
    RazorpayVerifyRequest,
    PaymentFailureRequest,
    RefundRequest,
    WebhookResponse,
    SweepResponse,
    OutboxEventResponse,
)


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_ledger_settings() -> Settings:
    return get_settings()


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def get_ledger(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_ledger_settings),
) -> SeatLedgerService:
    return SeatLedgerService(db, settings)


def get_coordinator(
    ledger: SeatLedgerService = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentOrderCoordinator:
    return PaymentOrderCoordinator(ledger.db, gateway, ledger)


async def get_raw_body(request: Request) -> str:
    return (await request.body()).decode("utf-8", errors="replace")


def _is_db_degraded(exc: Exception) -> bool:
    return isinstance(exc, (OperationalError, SQLAlchemyTimeoutError))


def _ledger_response(
    snapshot: LedgerSnapshot,
    quantity: int,
    lock_id: str | None = None,
    expires_at: datetime | None = None,
) -> SeatLedgerResponse:
    return SeatLedgerResponse(
        seat_type=snapshot.seat_type,
        quantity=quantity,
        locked_seats=snapshot.locked_seats,
        remaining_seats=snapshot.remaining_seats,
        status=snapshot.status,
        lock_id=lock_id,
        expires_at=expires_at.isoformat() if expires_at else None,
    )


def _category_response(snapshot: LedgerSnapshot) -> SeatingCategoryResponse:
    return SeatingCategoryResponse(
        id=snapshot.seating_category_id,
        seat_type=snapshot.seat_type,
        price=snapshot.price,
        total_seats=snapshot.total_seats,
        locked_seats=snapshot.locked_seats,
        seats_sold=snapshot.seats_sold,
        remaining_seats=snapshot.remaining_seats,
        status=snapshot.status,
        is_active=snapshot.is_active,
    )


def _event_response(event: Event, snapshots: list[LedgerSnapshot]) -> EventResponse:
    return EventResponse(
        id=event.id,
        name=event.name,
        date_time=event.date_time.isoformat(),
        location=event.location,
        status=event.status,
        seatings=[_category_response(snapshot) for snapshot in snapshots],
    )


def _order_response(order: PaymentOrder, gateway: PaymentGateway) -> PaymentOrderResponse:
    return PaymentOrderResponse(
        order_id=order.id,
        lock_id=order.lock_id,
        status=order.status.value,
        remote_order_id=order.remote_order_id,
        amount=order.amount_paise,
        currency=order.currency,
        key_id=gateway.public_key,
        payment_id=order.payment_id,
        failure_reason=order.failure_reason,
        refund_id=order.refund_id,
        expires_at=order.expires_at.isoformat() if order.expires_at else None,
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Seat Ledger is running"}


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    events = OutboxRepository(db).list_events(status=status_filter, limit=limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    item = OutboxRepository(db).mark_published(event_id)
    return _outbox_response(item)


@router.post("/events", response_model=EventResponse)
def create_event(
    request: EventCreate,
    ledger: SeatLedgerService = Depends(get_ledger),
):
    try:
        event_time = datetime.fromisoformat(request.date_time)
    except ValueError as exc:
        raise BookingValidationError("Invalid date_time format. Use ISO format.") from exc

    event, snapshots = ledger.create_event(
        name=request.name,
        date_time=event_time,
        location=request.location,
        status=request.status,
        seatings=[seating.model_dump() for seating in request.seatings],
    )
    return _event_response(event, snapshots)


@router.get("/events/{event_id}", response_model=EventResponse)
def get_event(event_id: str, ledger: SeatLedgerService = Depends(get_ledger)):
    event, snapshots = ledger.get_event(event_id)
    return _event_response(event, snapshots)


@router.get("/events/{event_id}/availability", response_model=list[SeatingCategoryResponse])
def list_availability(event_id: str, ledger: SeatLedgerService = Depends(get_ledger)):
    return [_category_response(snapshot) for snapshot in ledger.list_availability(event_id)]


@router.get(
    "/events/{event_id}/seatings/{seating_id}/availability",
    response_model=SeatingCategoryResponse,
)
def get_availability(
    event_id: str,
    seating_id: str,
    ledger: SeatLedgerService = Depends(get_ledger),
):
    return _category_response(ledger.get_availability(event_id, seating_id))


@router.post(
    "/events/{event_id}/seatings/{seating_id}/activation",
    response_model=SeatingCategoryResponse,
)
def set_seating_activation(
    event_id: str,
    seating_id: str,
    request: CategoryActivationRequest,
    ledger: SeatLedgerService = Depends(get_ledger),
):
    snapshot = ledger.set_category_active(event_id, seating_id, request.is_active)
    return _category_response(snapshot)


@router.delete(
    "/events/{event_id}/seatings/{seating_id}",
    response_model=CategoryRemovalResponse,
)
def remove_seating(
    event_id: str,
    seating_id: str,
    ledger: SeatLedgerService = Depends(get_ledger),
):
    snapshot = ledger.remove_category(event_id, seating_id)
    return CategoryRemovalResponse(
        seating_id=seating_id,
        action="deleted" if snapshot is None else "archived",
    )


@router.post("/bookings/lock", response_model=SeatLedgerResponse)
def lock_seats(
    request: SeatLockRequest,
    x_user_id: str | None = Header(default=None),
    ledger: SeatLedgerService = Depends(get_ledger),
):
    result = LockManager(ledger.db, ledger).acquire_lock(
        request.event_id,
        request.seating_id,
        request.quantity,
        requester_id=x_user_id,
    )
    return _ledger_response(
        result.snapshot,
        result.quantity,
        lock_id=result.lock_id,
        expires_at=result.expires_at,
    )


@router.post("/bookings/confirm", response_model=SeatLedgerResponse)
def confirm_seats(
    request: SeatLockRequest,
    ledger: SeatLedgerService = Depends(get_ledger),
):
    result = ConfirmationEngine(ledger.db, ledger).confirm_booking(
        request.event_id,
        request.seating_id,
        request.quantity,
        lock_id=request.lock_id,
    )
    return _ledger_response(result.snapshot, result.quantity, lock_id=result.lock_id)


@router.post("/bookings/cancel", response_model=SeatLedgerResponse)
def cancel_seats(
    request: SeatLockRequest,
    ledger: SeatLedgerService = Depends(get_ledger),
):
    snapshot = LockManager(ledger.db, ledger).release_lock(
        request.event_id,
        request.seating_id,
        request.quantity,
        lock_id=request.lock_id,
        reason="CANCELLED",
    )
    return _ledger_response(snapshot, request.quantity, lock_id=request.lock_id)


@router.post("/payments/orders", response_model=PaymentOrderResponse)
def create_payment_order(
    request: PaymentOrderCreate,
    x_user_id: str | None = Header(default=None),
    coordinator: PaymentOrderCoordinator = Depends(get_coordinator),
):
    if request.lock_id:
        lock = coordinator.lock_manager.lock_repository.get_by_id(request.lock_id)
        ensure_lock_matches(lock, request.event_id, request.seating_id, request.quantity)
        order = coordinator.create_order_for_lock(lock.id)
    else:
        order = coordinator.start_checkout(
            request.event_id,
            request.seating_id,
            request.quantity,
            requester_id=x_user_id,
        ).order
    return _order_response(order, coordinator.gateway)


@router.get("/payments/orders/{order_id}", response_model=PaymentOrderResponse)
def get_payment_order(
    order_id: str,
    coordinator: PaymentOrderCoordinator = Depends(get_coordinator),
):
    return _order_response(coordinator.get_order(order_id), coordinator.gateway)


@router.post("/payments/orders/{order_id}/verify", response_model=PaymentOrderResponse)
def verify_payment_order(
    order_id: str,
    request: RazorpayVerifyRequest,
    coordinator: PaymentOrderCoordinator = Depends(get_coordinator),
):
    result = coordinator.reconcile(
        order_id,
        PaymentOutcome.CAPTURED,
        payment_id=request.razorpay_payment_id,
        signature=request.razorpay_signature,
        remote_order_id=request.razorpay_order_id,
    )
    return _order_response(result.order, coordinator.gateway)


@router.post("/payments/orders/{order_id}/fail", response_model=PaymentOrderResponse)
def fail_payment_order(
    order_id: str,
    request: PaymentFailureRequest,
    coordinator: PaymentOrderCoordinator = Depends(get_coordinator),
):
    result = coordinator.reconcile(
        order_id,
        PaymentOutcome.FAILED,
        reason=request.reason,
    )
    return _order_response(result.order, coordinator.gateway)


@router.post("/payments/orders/{order_id}/refund", response_model=PaymentOrderResponse)
def refund_payment_order(
    order_id: str,
    request: RefundRequest,
    coordinator: PaymentOrderCoordinator = Depends(get_coordinator),
):
    order = coordinator.refund_order(order_id, amount_paise=request.amount)
    return _order_response(order, coordinator.gateway)


@router.post("/payments/webhook", response_model=WebhookResponse)
def payment_webhook(
    body: str = Depends(get_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    coordinator: PaymentOrderCoordinator = Depends(get_coordinator),
):
    handler = PaymentWebhookHandler(coordinator.db, coordinator.gateway, coordinator)
    try:
        result = handler.handle(body, x_razorpay_signature)
    except Exception as exc:
        if not _is_db_degraded(exc):
            raise
        coordinator.db.rollback()
        logger.warning("Webhook deferred due to DB degradation: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database is currently degraded. Retry delivery later.",
        ) from exc

    return WebhookResponse(
        status=result.status,
        event=result.event,
        order_id=result.order_id,
        detail=result.detail,
    )


@router.post("/maintenance/sweep", response_model=SweepResponse)
def sweep_expired(coordinator: PaymentOrderCoordinator = Depends(get_coordinator)):
    report = coordinator.expire_stale()
    return SweepResponse(
        expired_orders=report.expired_orders,
        released_locks=report.released_locks,
        refunded_orders=report.refunded_orders,
        errors=report.errors,
    )
