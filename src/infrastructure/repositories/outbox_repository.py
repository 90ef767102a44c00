# src/infrastructure/repositories/outbox_repository.py

import json
from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import OutboxEvent
from src.domain.exceptions import NotFoundError


class OutboxRepository:

    def __init__(self, db: Session):
        self.db = db

    def has_event(self, dedupe_key: str) -> bool:
        stmt = select(OutboxEvent.id).where(OutboxEvent.dedupe_key == dedupe_key)
        return self.db.execute(stmt).first() is not None

    def add_event(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> None:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return

        self.db.add(
            OutboxEvent(
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                event_type=event_type,
                payload=json.dumps(payload, sort_keys=True),
                dedupe_key=dedupe_key,
                status="PENDING",
                attempts=0,
            )
        )
        self.db.flush()

    def list_events(self, status: str = "PENDING", limit: int = 50) -> list[OutboxEvent]:
        safe_limit = max(1, min(limit, 200))
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == status)
            .order_by(OutboxEvent.created_at)
            .limit(safe_limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_published(self, event_id: str) -> OutboxEvent:
        item = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
        ).scalar_one_or_none()
        if not item:
            raise NotFoundError("Outbox event not found")

        item.status = "PUBLISHED"
        item.published_at = datetime.now(timezone.utc)
        item.attempts += 1
        self.db.flush()
        return item
