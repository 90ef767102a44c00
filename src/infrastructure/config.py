# src/infrastructure/config.py

import os
from dataclasses import dataclass
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    razorpay_key_id: str | None
    razorpay_key_secret: str | None
    razorpay_webhook_secret: str | None
    currency: str = "INR"
    lock_ttl: timedelta = timedelta(minutes=15)
    ledger_max_retries: int = 3
    ledger_retry_backoff_seconds: float = 0.05


def get_settings() -> Settings:
    return Settings(
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET"),
        razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET"),
        currency=os.getenv("PAYMENT_CURRENCY", "INR"),
        lock_ttl=timedelta(minutes=float(os.getenv("LOCK_TTL_MINUTES", "15"))),
        ledger_max_retries=int(os.getenv("LEDGER_MAX_RETRIES", "3")),
        ledger_retry_backoff_seconds=float(
            os.getenv("LEDGER_RETRY_BACKOFF_SECONDS", "0.05")
        ),
    )
