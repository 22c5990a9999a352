from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lotledger.db import get_session
from lotledger.deps import session_dep
from lotledger.models import OutboxStatus
from lotledger.schemas import DispatchSummary, OutboxEventRead
from lotledger.services.outbox_dispatcher import OutboxDispatcher
from lotledger.services.outbox_service import OutboxService

router = APIRouter(tags=["outbox"])


def outbox_service_dep(db: Session = Depends(session_dep)) -> OutboxService:
    return OutboxService(db)


def outbox_dispatcher_dep() -> OutboxDispatcher:
    return OutboxDispatcher(get_session)


@router.get("/outbox", response_model=list[OutboxEventRead])
def list_outbox_events(
    status: Optional[OutboxStatus] = None,
    limit: int = 100,
    service: OutboxService = Depends(outbox_service_dep),
) -> list[OutboxEventRead]:
    return [OutboxEventRead.model_validate(e) for e in service.list_events(status=status, limit=limit)]


@router.post("/outbox/{event_id}/requeue", response_model=OutboxEventRead)
def requeue_outbox_event(
    event_id: str,
    service: OutboxService = Depends(outbox_service_dep),
) -> OutboxEventRead:
    return OutboxEventRead.model_validate(service.requeue(event_id))


@router.post("/outbox/dispatch", response_model=DispatchSummary)
def dispatch_outbox(
    limit: Optional[int] = None,
    dispatcher: OutboxDispatcher = Depends(outbox_dispatcher_dep),
) -> DispatchSummary:
    return dispatcher.run_once(limit=limit)
