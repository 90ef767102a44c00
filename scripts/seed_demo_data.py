from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.application.seat_ledger_service import SeatLedgerService
from src.infrastructure.db.models import Event
from src.infrastructure.db.session import Base, engine, get_db_session


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    ist = timezone(timedelta(hours=5, minutes=30))
    now_ist = datetime.now(ist)
    target = now_ist + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


EVENT_DEFS = [
    {
        "name": "Sunidhi Chauhan Live Concert",
        "date_time": _dt(days_from_now=10, hour=19, minute=30),
        "location": "Indira Gandhi Arena, New Delhi",
        "seatings": [
            {"seat_type": "Regular", "price": 1800, "total_seats": 400},
            {"seat_type": "VIP", "price": 4500, "total_seats": 120},
        ],
    },
    {
        "name": "Holi Festival 2026",
        "date_time": _dt(days_from_now=15, hour=11, minute=0),
        "location": "Jawaharlal Nehru Stadium Grounds, Delhi",
        "seatings": [
            {"seat_type": "General", "price": 1200, "total_seats": 700},
            {"seat_type": "Premium", "price": 2800, "total_seats": 180},
        ],
    },
]


def seed_events(db) -> list[str]:
    """Create demo events that do not exist yet. Existing counters are left alone."""

    ledger = SeatLedgerService(db)
    created = []
    for item in EVENT_DEFS:
        existing = db.execute(
            select(Event).where(Event.name == item["name"])
        ).scalar_one_or_none()
        if existing:
            continue

        event, _ = ledger.create_event(
            name=item["name"],
            date_time=item["date_time"],
            location=item["location"],
            seatings=item["seatings"],
        )
        created.append(event.id)
    return created


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        created = seed_events(db)
    print(f"Seed complete: {len(created)} event(s) added.")


if __name__ == "__main__":
    main()
