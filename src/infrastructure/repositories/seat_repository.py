# src/infrastructure/repositories/seat_repository.py

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy import select, update

from src.infrastructure.db.models import Event, SeatingCategory
from src.domain.exceptions import ConcurrencyConflictError, NotFoundError
from src.domain.seat_ledger import SeatCounts


class SeatRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_event(self, event_id: str) -> Event:
        event = self.db.execute(
            select(Event).where(Event.id == event_id)
        ).scalar_one_or_none()

        if not event:
            raise NotFoundError("Event not found")

        return event

    def get_category(
        self,
        event_id: str,
        seating_category_id: str,
    ) -> SeatingCategory:
        """
        Always reads the current row, bypassing any stale identity-map copy,
        so a retried mutation starts from fresh counters.
        """

        stmt = (
            select(SeatingCategory)
            .where(SeatingCategory.event_id == event_id)
            .where(SeatingCategory.id == seating_category_id)
            .execution_options(populate_existing=True)
        )

        category = self.db.execute(stmt).scalar_one_or_none()

        if not category:
            raise NotFoundError("Seating category not found")

        return category

    def list_categories(
        self,
        event_id: str,
        active_only: bool = False,
    ) -> list[SeatingCategory]:
        stmt = (
            select(SeatingCategory)
            .where(SeatingCategory.event_id == event_id)
            .order_by(SeatingCategory.seat_type)
            .execution_options(populate_existing=True)
        )
        if active_only:
            stmt = stmt.where(SeatingCategory.is_active.is_(True))
        return list(self.db.execute(stmt).scalars().all())

    def create_event(self, event: Event, categories: list[SeatingCategory]) -> Event:
        self.db.add(event)
        self.db.flush()

        for category in categories:
            category.event_id = event.id
            self.db.add(category)

        self.db.flush()
        return event

    def save_counts(
        self,
        category: SeatingCategory,
        counts: SeatCounts,
    ) -> None:
        """
        Compare-and-swap on the version column.
        Zero rows updated means another writer got there first.
        """

        result = self.db.execute(
            update(SeatingCategory)
            .where(SeatingCategory.id == category.id)
            .where(SeatingCategory.version == category.version)
            .values(
                locked_seats=counts.locked_seats,
                seats_sold=counts.seats_sold,
                version=category.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            raise ConcurrencyConflictError(
                f"Seating category {category.id} was modified concurrently"
            )

        set_committed_value(category, "locked_seats", counts.locked_seats)
        set_committed_value(category, "seats_sold", counts.seats_sold)
        set_committed_value(category, "version", category.version + 1)

    def set_flags(
        self,
        category: SeatingCategory,
        **flags,
    ) -> None:
        result = self.db.execute(
            update(SeatingCategory)
            .where(SeatingCategory.id == category.id)
            .where(SeatingCategory.version == category.version)
            .values(version=category.version + 1, **flags)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            raise ConcurrencyConflictError(
                f"Seating category {category.id} was modified concurrently"
            )

        for name, value in flags.items():
            set_committed_value(category, name, value)
        set_committed_value(category, "version", category.version + 1)

    def delete_category(self, category: SeatingCategory) -> None:
        self.db.delete(category)
        self.db.flush()
