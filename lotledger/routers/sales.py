from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lotledger.deps import session_dep
from lotledger.schemas import ConsumptionResult, PendingRead, ReconcileResult, SaleConsumptionCreate
from lotledger.services.consumption_service import ConsumptionService

router = APIRouter(tags=["sales"])


def consumption_service_dep(db: Session = Depends(session_dep)) -> ConsumptionService:
    return ConsumptionService(db)


@router.post("/sales/consume", response_model=ConsumptionResult)
def consume_for_sale(
    payload: SaleConsumptionCreate,
    service: ConsumptionService = Depends(consumption_service_dep),
) -> ConsumptionResult:
    return service.consume_for_sale(payload)


@router.post("/sales/pending/reconcile", response_model=ReconcileResult)
def reconcile_pending(
    product_id: Optional[int] = None,
    max_rows: int = 200,
    service: ConsumptionService = Depends(consumption_service_dep),
) -> ReconcileResult:
    return service.reconcile_pending(product_id=product_id, max_rows=max_rows)


@router.get("/sales/pending", response_model=list[PendingRead])
def list_pending(
    product_id: Optional[int] = None,
    service: ConsumptionService = Depends(consumption_service_dep),
) -> list[PendingRead]:
    return [PendingRead.model_validate(p) for p in service.list_pending(product_id=product_id)]
