from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lotledger.errors import NotFoundError, ValidationError
from lotledger.models import OutboxEvent, OutboxStatus
from lotledger.utils import utcnow

PRODUCT_UPSERT = "PRODUCT_UPSERT"


class OutboxService:
    def __init__(self, db: Session):
        self._db = db

    def enqueue(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> OutboxEvent:
        """Add an event to the caller's transaction; it is published only if that transaction commits."""
        event = OutboxEvent(
            aggregate_type=aggregate_type,
            aggregate_id=str(aggregate_id),
            event_type=event_type,
            payload=payload,
            status=OutboxStatus.PENDING.value,
            attempts=0,
            next_retry_at=utcnow(),
        )
        self._db.add(event)
        return event

    def get(self, event_id: str) -> OutboxEvent:
        event = self._db.get(OutboxEvent, event_id)
        if event is None:
            raise NotFoundError("OutboxEvent", event_id)
        return event

    def list_events(self, status: Optional[OutboxStatus] = None, limit: int = 100) -> list[OutboxEvent]:
        stmt = select(OutboxEvent)
        if status is not None:
            stmt = stmt.where(OutboxEvent.status == status.value)
        return list(
            self._db.scalars(stmt.order_by(OutboxEvent.created_at.desc(), OutboxEvent.id).limit(limit))
        )

    def requeue(self, event_id: str) -> OutboxEvent:
        event = self.get(event_id)
        if event.status == OutboxStatus.SENT.value:
            raise ValidationError("Event was already delivered", event_id=event_id)
        event.status = OutboxStatus.PENDING.value
        event.attempts = 0
        event.next_retry_at = utcnow()
        self._db.commit()
        self._db.refresh(event)
        return event
