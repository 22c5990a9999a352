from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lotledger.deps import session_dep
from lotledger.schemas import MovementResult, ShrinkageCreate
from lotledger.services.shrinkage_service import ShrinkageService

router = APIRouter(tags=["shrinkage"])


def shrinkage_service_dep(db: Session = Depends(session_dep)) -> ShrinkageService:
    return ShrinkageService(db)


@router.post("/shrinkage", response_model=MovementResult)
def register_shrinkage(
    payload: ShrinkageCreate,
    service: ShrinkageService = Depends(shrinkage_service_dep),
) -> MovementResult:
    return service.register_shrinkage(payload)
