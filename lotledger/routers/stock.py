from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from lotledger.deps import session_dep
from lotledger.schemas import DriftRow, KardexPage, SnapshotRow, StockRead
from lotledger.services.stock_service import StockService

router = APIRouter(tags=["stock"])


def stock_service_dep(db: Session = Depends(session_dep)) -> StockService:
    return StockService(db)


@router.get("/stock/audit/drift", response_model=list[DriftRow])
def aggregate_drift(service: StockService = Depends(stock_service_dep)) -> list[DriftRow]:
    return service.find_aggregate_drift()


@router.get("/stock/snapshot/{day}", response_model=list[SnapshotRow])
def initial_stock_snapshot(
    day: date,
    service: StockService = Depends(stock_service_dep),
) -> list[SnapshotRow]:
    return service.initial_stock_snapshot(day)


@router.get("/stock/{product_id}", response_model=StockRead)
def get_stock(
    product_id: int,
    warehouse_id: Optional[int] = None,
    service: StockService = Depends(stock_service_dep),
) -> StockRead:
    return StockRead(
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=service.get_stock(product_id, warehouse_id),
    )


@router.get("/stock/{product_id}/kardex", response_model=KardexPage)
def kardex(
    product_id: int,
    warehouse_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    order: Literal["asc", "desc"] = "desc",
    service: StockService = Depends(stock_service_dep),
) -> KardexPage:
    return service.kardex(
        product_id,
        warehouse_id=warehouse_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
        descending=order == "desc",
    )
