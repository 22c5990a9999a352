from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lotledger.deps import session_dep
from lotledger.schemas import CountAdjustmentCreate, CountAdjustmentResult
from lotledger.services.adjustment_service import AdjustmentService

router = APIRouter(tags=["adjustments"])


def adjustment_service_dep(db: Session = Depends(session_dep)) -> AdjustmentService:
    return AdjustmentService(db)


@router.post("/adjustments/count", response_model=CountAdjustmentResult)
def adjust_by_count(
    payload: CountAdjustmentCreate,
    service: AdjustmentService = Depends(adjustment_service_dep),
) -> CountAdjustmentResult:
    return service.adjust_by_count(payload)
