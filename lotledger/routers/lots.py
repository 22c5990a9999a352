from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lotledger.deps import session_dep
from lotledger.schemas import LotBlockUpdate, LotRead
from lotledger.services.lot_service import LotService

router = APIRouter(tags=["lots"])


def lot_service_dep(db: Session = Depends(session_dep)) -> LotService:
    return LotService(db)


@router.get("/lots", response_model=list[LotRead])
def list_lots(
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    only_available: bool = True,
    service: LotService = Depends(lot_service_dep),
) -> list[LotRead]:
    lots = service.list_lots(
        product_id=product_id, warehouse_id=warehouse_id, only_available=only_available
    )
    return [LotRead.model_validate(lot) for lot in lots]


@router.get("/lots/{lot_id}", response_model=LotRead)
def get_lot(lot_id: str, service: LotService = Depends(lot_service_dep)) -> LotRead:
    return LotRead.model_validate(service.get_lot(lot_id))


@router.patch("/lots/{lot_id}/block", response_model=LotRead)
def set_lot_blocked(
    lot_id: str,
    payload: LotBlockUpdate,
    service: LotService = Depends(lot_service_dep),
) -> LotRead:
    return LotRead.model_validate(service.set_blocked(lot_id, payload.blocked))
