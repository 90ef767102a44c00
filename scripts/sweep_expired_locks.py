import logging
import os

from src.application.payment_coordinator import PaymentOrderCoordinator
from src.infrastructure.db.session import get_db_session
from src.infrastructure.payments.gateway import get_payment_gateway


def main() -> None:
    """Release abandoned seat locks. Meant to run from cron every minute or so."""

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    with get_db_session() as db:
        report = PaymentOrderCoordinator(db, get_payment_gateway()).expire_stale()

    print(
        f"Sweep complete: {len(report.expired_orders)} order(s) expired, "
        f"{len(report.released_locks)} lock(s) released, "
        f"{len(report.refunded_orders)} payment(s) refunded, "
        f"{report.errors} error(s)."
    )


if __name__ == "__main__":
    main()
