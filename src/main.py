import logging
import os
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from src.api.errors import register_exception_handlers
from src.api.routes.routes import router
from src.infrastructure.config import get_settings
from src.infrastructure.db.session import Base, engine

# Registers the ORM tables on Base.metadata.
import src.infrastructure.db.models  # noqa: F401

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Seat Ledger")

app.include_router(router)
register_exception_handlers(app)
logger = logging.getLogger(__name__)


def _wait_for_db(max_retries: int, retry_delay_seconds: float) -> None:
    # The API container usually starts before Postgres accepts connections.
    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable after %s attempt(s).", attempt)
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


@app.on_event("startup")
def on_startup() -> None:
    _wait_for_db(
        max_retries=int(os.getenv("DB_CONNECT_MAX_RETRIES", "30")),
        retry_delay_seconds=float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5")),
    )
    Base.metadata.create_all(bind=engine)

    settings = get_settings()
    if not settings.razorpay_key_id or not settings.razorpay_key_secret:
        logger.warning("Razorpay keys not configured; payment orders will fail with 502.")
    logger.info(
        "Seat ledger ready. lock_ttl=%s currency=%s ledger_max_retries=%s",
        settings.lock_ttl,
        settings.currency,
        settings.ledger_max_retries,
    )
