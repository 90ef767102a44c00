import logging
from datetime import datetime
from typing import Callable, TypeVar

from sqlalchemy.orm import Session

from src.application.results import LedgerSnapshot
from src.application.unit_of_work import run_atomic
from src.domain.exceptions import BookingValidationError
from src.domain.seat_ledger import SeatCounts
from src.infrastructure.config import Settings, get_settings
from src.infrastructure.db.models import Event, SeatingCategory
from src.infrastructure.repositories.lock_repository import SeatLockRepository
from src.infrastructure.repositories.seat_repository import SeatRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


def require_ids(**ids) -> None:
    for name, value in ids.items():
        if not isinstance(value, str) or not value.strip():
            raise BookingValidationError(f"{name} is required")


class SeatLedgerService:
    """
    Authoritative seat counters, one seating category at a time.

    ``apply`` is the only write path for counters: it loads the category,
    runs a pure delta over its ``SeatCounts`` and persists the result with a
    version-checked update. Callers wrap it in ``run_atomic`` so a lost race
    is retried against fresh state.
    """

    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.seat_repository = SeatRepository(db)

    def run_atomic(self, work: Callable[[], T]) -> T:
        return run_atomic(
            self.db,
            work,
            max_attempts=self.settings.ledger_max_retries,
            backoff_seconds=self.settings.ledger_retry_backoff_seconds,
        )

    def get_availability(
        self,
        event_id: str,
        seating_category_id: str,
    ) -> LedgerSnapshot:
        require_ids(event_id=event_id, seating_id=seating_category_id)
        self.seat_repository.get_event(event_id)
        category = self.seat_repository.get_category(event_id, seating_category_id)
        return LedgerSnapshot.from_category(category)

    def list_availability(self, event_id: str) -> list[LedgerSnapshot]:
        require_ids(event_id=event_id)
        self.seat_repository.get_event(event_id)
        return [
            LedgerSnapshot.from_category(category)
            for category in self.seat_repository.list_categories(event_id, active_only=True)
        ]

    def apply(
        self,
        event_id: str,
        seating_category_id: str,
        delta: Callable[[SeatCounts], SeatCounts],
        require_bookable: bool = False,
    ) -> LedgerSnapshot:
        """Must run inside ``run_atomic``."""

        if require_bookable:
            event = self.seat_repository.get_event(event_id)
            if not event.is_bookable:
                raise BookingValidationError(
                    f"Event is {event.status}. Cannot book seats"
                )

        category = self.seat_repository.get_category(event_id, seating_category_id)
        if require_bookable and (not category.is_active or category.is_archived):
            raise BookingValidationError("Seating category not available")

        counts = delta(category.counts)
        self.seat_repository.save_counts(category, counts)
        return LedgerSnapshot.from_category(category)

    def create_event(
        self,
        name: str,
        date_time: datetime,
        location: str,
        seatings: list[dict],
        status: str = "upcoming",
    ) -> tuple[Event, list[LedgerSnapshot]]:
        seat_types = [seating["seat_type"] for seating in seatings]
        if len(set(seat_types)) != len(seat_types):
            raise BookingValidationError("Seat types must be unique within an event")

        event = Event(
            name=name,
            date_time=date_time,
            location=location,
            status=status,
        )
        categories = [
            SeatingCategory(
                seat_type=seating["seat_type"],
                price=seating["price"],
                total_seats=seating["total_seats"],
                locked_seats=0,
                seats_sold=0,
                is_active=seating.get("is_active", True),
                is_archived=False,
                version=1,
            )
            for seating in seatings
        ]

        def work():
            self.seat_repository.create_event(event, categories)
            return event, [LedgerSnapshot.from_category(c) for c in categories]

        result = self.run_atomic(work)
        logger.info("Event created. event_id=%s seatings=%s", event.id, len(categories))
        return result

    def get_event(self, event_id: str) -> tuple[Event, list[LedgerSnapshot]]:
        require_ids(event_id=event_id)
        event = self.seat_repository.get_event(event_id)
        categories = self.seat_repository.list_categories(event_id)
        return event, [LedgerSnapshot.from_category(c) for c in categories]

    def set_category_active(
        self,
        event_id: str,
        seating_category_id: str,
        is_active: bool,
    ) -> LedgerSnapshot:
        require_ids(event_id=event_id, seating_id=seating_category_id)

        def work():
            category = self.seat_repository.get_category(event_id, seating_category_id)
            if category.is_archived and is_active:
                raise BookingValidationError("Archived seating categories cannot be reactivated")
            self.seat_repository.set_flags(category, is_active=is_active)
            return LedgerSnapshot.from_category(category)

        return self.run_atomic(work)

    def remove_category(
        self,
        event_id: str,
        seating_category_id: str,
    ) -> LedgerSnapshot | None:
        """
        Deletes a category that never took a booking, archives it otherwise.
        Returns the archived snapshot, or None when the row was deleted.
        """

        require_ids(event_id=event_id, seating_id=seating_category_id)
        lock_repository = SeatLockRepository(self.db)

        def work():
            category = self.seat_repository.get_category(event_id, seating_category_id)
            counts = category.counts
            if (
                counts.seats_sold == 0
                and counts.locked_seats == 0
                and not lock_repository.category_has_locks(category.id)
            ):
                self.seat_repository.delete_category(category)
                return None

            self.seat_repository.set_flags(category, is_active=False, is_archived=True)
            return LedgerSnapshot.from_category(category)

        snapshot = self.run_atomic(work)
        logger.info(
            "Seating category %s. event_id=%s seating_id=%s",
            "deleted" if snapshot is None else "archived",
            event_id,
            seating_category_id,
        )
        return snapshot
