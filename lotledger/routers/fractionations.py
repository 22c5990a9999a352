from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lotledger.deps import session_dep
from lotledger.schemas import FractionationCreate, FractionationFactorCreate, MovementResult
from lotledger.services.fractionation_service import FractionationService

router = APIRouter(tags=["fractionations"])


def fractionation_service_dep(db: Session = Depends(session_dep)) -> FractionationService:
    return FractionationService(db)


@router.post("/fractionations", response_model=MovementResult)
def fractionate(
    payload: FractionationCreate,
    service: FractionationService = Depends(fractionation_service_dep),
) -> MovementResult:
    return service.fractionate(payload)


@router.post("/fractionations/factor", response_model=MovementResult)
def fractionate_by_factor(
    payload: FractionationFactorCreate,
    service: FractionationService = Depends(fractionation_service_dep),
) -> MovementResult:
    return service.fractionate_by_factor(payload)
