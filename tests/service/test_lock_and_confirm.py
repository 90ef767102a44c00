from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from src.application.confirmation_engine import ConfirmationEngine
from src.application.lock_manager import LockManager
from src.domain.exceptions import (
    BookingValidationError,
    InsufficientInventoryError,
    NothingToConfirmError,
    NotFoundError,
)
from src.domain.seat_ledger import SeatStatus
from src.domain.state_machine import LockStatus
from src.infrastructure.db.models import Event, OutboxEvent, SeatLock
from src.infrastructure.repositories.outbox_repository import OutboxRepository


@pytest.fixture
def lock_manager(db, ledger):
    return LockManager(db, ledger)


@pytest.fixture
def confirmation_engine(db, ledger):
    return ConfirmationEngine(db, ledger)


def test_acquire_lock_creates_hold(db, ledger, lock_manager, event_factory):
    event_id, seating_id = event_factory(total_seats=10)

    result = lock_manager.acquire_lock(event_id, seating_id, 3, requester_id="user-1")

    assert result.snapshot.locked_seats == 3
    assert result.snapshot.remaining_seats == 7
    assert result.snapshot.status == SeatStatus.AVAILABLE
    lock = db.get(SeatLock, result.lock_id)
    assert lock.status == LockStatus.ACTIVE
    assert lock.requester_id == "user-1"
    assert lock.quantity == 3


def test_lock_confirm_then_oversell_is_rejected(lock_manager, confirmation_engine, event_factory):
    event_id, seating_id = event_factory(total_seats=10)

    lock = lock_manager.acquire_lock(event_id, seating_id, 3)
    confirmed = confirmation_engine.confirm_booking(event_id, seating_id, 3, lock_id=lock.lock_id)

    assert confirmed.snapshot.seats_sold == 3
    assert confirmed.snapshot.locked_seats == 0
    assert confirmed.snapshot.remaining_seats == 7

    with pytest.raises(InsufficientInventoryError) as exc_info:
        lock_manager.acquire_lock(event_id, seating_id, 8)

    assert exc_info.value.remaining == 7


def test_confirming_same_lock_twice_never_double_counts(
    ledger, lock_manager, confirmation_engine, event_factory
):
    event_id, seating_id = event_factory(total_seats=10)
    lock = lock_manager.acquire_lock(event_id, seating_id, 2)
    confirmation_engine.confirm_booking(event_id, seating_id, 2, lock_id=lock.lock_id)

    with pytest.raises(NothingToConfirmError):
        confirmation_engine.confirm_booking(event_id, seating_id, 2, lock_id=lock.lock_id)

    snapshot = ledger.get_availability(event_id, seating_id)
    assert snapshot.seats_sold == 2
    assert snapshot.locked_seats == 0


def test_counter_level_confirm_without_lock_raises(confirmation_engine, event_factory):
    event_id, seating_id = event_factory(total_seats=10)

    with pytest.raises(NothingToConfirmError):
        confirmation_engine.confirm_booking(event_id, seating_id, 1)


def test_counter_level_release_saturates(ledger, lock_manager, event_factory):
    event_id, seating_id = event_factory(total_seats=10)
    lock_manager.acquire_lock(event_id, seating_id, 2)

    snapshot = lock_manager.release_lock(event_id, seating_id, 5)

    assert snapshot.locked_seats == 0
    assert snapshot.remaining_seats == 10


def test_release_by_lock_is_idempotent(db, ledger, lock_manager, event_factory):
    event_id, seating_id = event_factory(total_seats=10)
    first = lock_manager.acquire_lock(event_id, seating_id, 2)
    lock_manager.acquire_lock(event_id, seating_id, 3)

    lock_manager.release_lock(event_id, seating_id, 2, lock_id=first.lock_id)
    snapshot = lock_manager.release_lock(event_id, seating_id, 2, lock_id=first.lock_id)

    # The second hold is untouched by the repeated release.
    assert snapshot.locked_seats == 3
    assert db.get(SeatLock, first.lock_id).status == LockStatus.RELEASED
    released = [
        event
        for event in OutboxRepository(db).list_events()
        if event.event_type == "SEATS_RELEASED"
    ]
    assert len(released) == 1


def test_release_of_confirmed_lock_raises(lock_manager, confirmation_engine, event_factory):
    event_id, seating_id = event_factory(total_seats=10)
    lock = lock_manager.acquire_lock(event_id, seating_id, 2)
    confirmation_engine.confirm_booking(event_id, seating_id, 2, lock_id=lock.lock_id)

    with pytest.raises(NothingToConfirmError):
        lock_manager.release_lock(event_id, seating_id, 2, lock_id=lock.lock_id)


def test_lock_id_must_match_request(lock_manager, confirmation_engine, event_factory):
    event_id, seating_id = event_factory(total_seats=10)
    lock = lock_manager.acquire_lock(event_id, seating_id, 2)

    with pytest.raises(BookingValidationError):
        confirmation_engine.confirm_booking(event_id, seating_id, 3, lock_id=lock.lock_id)


def test_unknown_event_and_category(lock_manager, event_factory):
    event_id, _ = event_factory()

    with pytest.raises(NotFoundError):
        lock_manager.acquire_lock("missing-event", "missing-seating", 1)

    with pytest.raises(NotFoundError):
        lock_manager.acquire_lock(event_id, "missing-seating", 1)


def test_cannot_lock_on_closed_event(db, lock_manager, event_factory):
    event_id, seating_id = event_factory()
    db.get(Event, event_id).status = "cancelled"
    db.commit()

    with pytest.raises(BookingValidationError):
        lock_manager.acquire_lock(event_id, seating_id, 1)


def test_cannot_lock_inactive_category(ledger, lock_manager, event_factory):
    event_id, seating_id = event_factory()
    ledger.set_category_active(event_id, seating_id, False)

    with pytest.raises(BookingValidationError):
        lock_manager.acquire_lock(event_id, seating_id, 1)

    ledger.set_category_active(event_id, seating_id, True)
    assert lock_manager.acquire_lock(event_id, seating_id, 1).snapshot.locked_seats == 1


def test_lock_expiry_uses_configured_ttl(lock_manager, event_factory, settings):
    event_id, seating_id = event_factory()
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    result = lock_manager.acquire_lock(event_id, seating_id, 1, now=now)

    assert result.expires_at == now + settings.lock_ttl
    assert settings.lock_ttl == timedelta(minutes=15)


def test_confirm_emits_outbox_event(db, lock_manager, confirmation_engine, event_factory):
    event_id, seating_id = event_factory()
    lock = lock_manager.acquire_lock(event_id, seating_id, 1)
    confirmation_engine.confirm_booking(event_id, seating_id, 1, lock_id=lock.lock_id)

    events = db.execute(
        select(OutboxEvent).where(OutboxEvent.aggregate_id == lock.lock_id)
    ).scalars().all()
    assert [event.event_type for event in events] == ["SEATS_CONFIRMED"]
