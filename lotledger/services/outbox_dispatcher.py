"""
Outbox delivery.

One cycle claims due events (PENDING or FAILED with next_retry_at in the
past), hands each to the sender registered for its event type and
records the outcome with a guarded update. Delivery is at-least-once:
receivers must treat repeated payloads as no-ops.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from lotledger.config import LedgerConfig, OutboxSection, SalesApiSection, load_ledger_config
from lotledger.errors import IntegrationFailure
from lotledger.logging_setup import get_logger
from lotledger.models import OutboxEvent, OutboxStatus
from lotledger.schemas import DispatchSummary
from lotledger.services.outbox_service import PRODUCT_UPSERT
from lotledger.utils import utcnow

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000
_RETRYABLE_STATUSES = (OutboxStatus.PENDING.value, OutboxStatus.FAILED.value)


class EventSender(Protocol):
    def send(self, payload: dict[str, Any]) -> None: ...


def backoff_delay(attempts: int, schedule: list[int], max_minutes: int) -> timedelta:
    """Delay before the next try after ``attempts`` failures, clamped to ``max_minutes``."""
    index = min(max(attempts, 1) - 1, len(schedule) - 1)
    return timedelta(minutes=min(schedule[index], max_minutes))


class SalesApiSender:
    UPSERT_PATH = "/integraciones/productos/upsert"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, section: SalesApiSection, client: Optional[httpx.Client] = None) -> "SalesApiSender":
        return cls(section.base_url, section.api_key, timeout=section.timeout, client=client)

    def _post(self, client: httpx.Client, payload: dict[str, Any]) -> httpx.Response:
        return client.post(
            f"{self._base_url}{self.UPSERT_PATH}",
            json=payload,
            headers={"x-api-key": self._api_key},
            timeout=self._timeout,
        )

    def send(self, payload: dict[str, Any]) -> None:
        if not self._base_url:
            raise IntegrationFailure("sales api base url is not configured")
        try:
            if self._client is not None:
                response = self._post(self._client, payload)
            else:
                with httpx.Client() as client:
                    response = self._post(client, payload)
        except httpx.HTTPError as e:
            raise IntegrationFailure(f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise IntegrationFailure(
                f"HTTP {response.status_code}: {response.text}", status_code=response.status_code
            )


@dataclass
class _Claimed:
    id: str
    event_type: str
    payload: dict[str, Any]
    attempts: int


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        senders: Optional[dict[str, EventSender]] = None,
        config: Optional[LedgerConfig] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._config = config or load_ledger_config()
        if senders is None:
            senders = {PRODUCT_UPSERT: SalesApiSender.from_config(self._config.sales_api)}
        self._senders = senders
        self._now = now

    @property
    def settings(self) -> OutboxSection:
        return self._config.outbox

    def _claim(self, db: Session, limit: int) -> list[_Claimed]:
        rows = db.scalars(
            select(OutboxEvent)
            .where(
                OutboxEvent.status.in_(_RETRYABLE_STATUSES),
                OutboxEvent.next_retry_at <= self._now(),
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        claimed = [
            _Claimed(id=row.id, event_type=row.event_type, payload=dict(row.payload or {}), attempts=row.attempts)
            for row in rows
        ]
        db.commit()
        return claimed

    def _deliver(self, event: _Claimed) -> None:
        sender = self._senders.get(event.event_type)
        if sender is None:
            raise IntegrationFailure(f"no sender registered for event type {event.event_type}")
        sender.send(event.payload)

    def _guarded_update(self, db: Session, event: _Claimed, **values: Any) -> bool:
        result = db.execute(
            update(OutboxEvent)
            .where(
                OutboxEvent.id == event.id,
                OutboxEvent.status.in_(_RETRYABLE_STATUSES),
                OutboxEvent.attempts == event.attempts,
            )
            .values(updated_at=self._now(), **values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def _record_failure(self, db: Session, event: _Claimed, error: str) -> tuple[bool, str]:
        attempts = event.attempts + 1
        max_attempts = self.settings.max_attempts
        if max_attempts is not None and attempts >= max_attempts:
            status = OutboxStatus.DEAD.value
        else:
            status = OutboxStatus.FAILED.value
        delay = backoff_delay(attempts, self.settings.backoff_minutes, self.settings.max_retry_minutes)
        updated = self._guarded_update(
            db,
            event,
            status=status,
            attempts=attempts,
            last_error=error[:MAX_ERROR_LENGTH],
            next_retry_at=self._now() + delay,
        )
        return updated, status

    def run_once(self, limit: Optional[int] = None) -> DispatchSummary:
        summary = DispatchSummary()
        db = self._session_factory()
        try:
            events = self._claim(db, limit or self.settings.batch_size)
            for event in events:
                summary.processed += 1
                try:
                    self._deliver(event)
                except Exception as e:
                    if isinstance(e, IntegrationFailure):
                        error = e.message
                    else:
                        logger.exception("outbox_sender_crashed", event_id=event.id, event_type=event.event_type)
                        error = f"{type(e).__name__}: {e}"
                    updated, status = self._record_failure(db, event, error)
                    if not updated:
                        summary.skipped += 1
                    elif status == OutboxStatus.DEAD.value:
                        summary.dead += 1
                    else:
                        summary.failed += 1
                    logger.warning(
                        "outbox_event_failed",
                        event_id=event.id,
                        event_type=event.event_type,
                        attempts=event.attempts + 1,
                        status=status,
                        error=error[:200],
                    )
                    continue

                if self._guarded_update(db, event, status=OutboxStatus.SENT.value, last_error=None):
                    summary.sent += 1
                    logger.info("outbox_event_sent", event_id=event.id, event_type=event.event_type)
                else:
                    summary.skipped += 1
        finally:
            db.close()

        if summary.processed:
            logger.info("outbox_cycle_completed", **summary.model_dump())
        return summary
