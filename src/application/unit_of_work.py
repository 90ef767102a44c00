# src/application/unit_of_work.py

import logging
import random
import time
from typing import Callable, TypeVar

from sqlalchemy.orm import Session

from src.domain.exceptions import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_atomic(
    db: Session,
    work: Callable[[], T],
    max_attempts: int = 3,
    backoff_seconds: float = 0.05,
) -> T:
    """
    Run ``work`` as one transaction and commit it.

    A ConcurrencyConflictError rolls the whole unit back and re-runs it
    against fresh state, up to ``max_attempts`` times. Any other error rolls
    back and propagates unchanged.
    """

    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            result = work()
            db.commit()
            return result
        except ConcurrencyConflictError:
            db.rollback()
            if attempt == attempts:
                logger.warning(
                    "Giving up after %s conflicting attempts.",
                    attempts,
                )
                raise
            delay = random.uniform(0, backoff_seconds * attempt)
            logger.info(
                "Concurrent update detected (attempt %s/%s). Retrying in %.3f seconds...",
                attempt,
                attempts,
                delay,
            )
            time.sleep(delay)
        except Exception:
            db.rollback()
            raise

    raise ConcurrencyConflictError("Unit of work did not complete")
