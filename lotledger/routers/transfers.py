from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lotledger.deps import session_dep
from lotledger.schemas import MovementResult, TransferCreate
from lotledger.services.transfer_service import TransferService

router = APIRouter(tags=["transfers"])


def transfer_service_dep(db: Session = Depends(session_dep)) -> TransferService:
    return TransferService(db)


@router.post("/transfers", response_model=MovementResult)
def create_transfer(
    payload: TransferCreate,
    service: TransferService = Depends(transfer_service_dep),
) -> MovementResult:
    return service.transfer(payload)
