import os

os.environ["DATABASE_URL"] = "sqlite:///./seat_ledger_test.db"

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from src.api.routes.routes import get_db, get_gateway, get_ledger_settings
from src.application.seat_ledger_service import SeatLedgerService
from src.infrastructure.config import Settings
from src.infrastructure.db.session import Base, build_engine
from src.main import app
from tests.fakes import FakeGateway


@pytest.fixture
def settings():
    return Settings(
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        razorpay_webhook_secret="whsec_test",
        lock_ttl=timedelta(minutes=15),
        ledger_max_retries=50,
        ledger_retry_backoff_seconds=0.001,
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'seat_ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ledger(db, settings):
    return SeatLedgerService(db, settings)


@pytest.fixture
def event_factory(ledger):
    def _create(total_seats=10, price=500, status="upcoming", seat_type="Regular"):
        event, snapshots = ledger.create_event(
            name="Arijit Singh Live",
            date_time=datetime.now(timezone.utc) + timedelta(days=7),
            location="Jawaharlal Nehru Stadium",
            status=status,
            seatings=[
                {"seat_type": seat_type, "price": price, "total_seats": total_seats},
            ],
        )
        return event.id, snapshots[0].seating_category_id

    return _create


@pytest.fixture
def client(session_factory, settings, gateway):

    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
