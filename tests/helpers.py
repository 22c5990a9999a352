from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lotledger.models import Lot, LotWarehouseAllocation, Movement, MovementLine, StockAggregate


def lot_by_id(db: Session, lot_id: str) -> Lot:
    db.expire_all()
    return db.get(Lot, lot_id)


def allocation_available(db: Session, lot_id: str, warehouse_id: int) -> Decimal:
    db.expire_all()
    value = db.scalar(
        select(LotWarehouseAllocation.available).where(
            LotWarehouseAllocation.lot_id == lot_id,
            LotWarehouseAllocation.warehouse_id == warehouse_id,
        )
    )
    return Decimal("0") if value is None else value


def aggregate_quantity(db: Session, product_id: int, warehouse_id: int) -> Decimal:
    db.expire_all()
    value = db.scalar(
        select(StockAggregate.quantity).where(
            StockAggregate.product_id == product_id,
            StockAggregate.warehouse_id == warehouse_id,
        )
    )
    return Decimal("0") if value is None else value


def movement_count(db: Session) -> int:
    return db.scalar(select(func.count()).select_from(Movement)) or 0


def signed_line_total(db: Session, product_id: int, warehouse_id: int) -> Decimal:
    lines = db.scalars(
        select(MovementLine).where(
            MovementLine.product_id == product_id,
            MovementLine.warehouse_id == warehouse_id,
        )
    )
    return sum((line.quantity * line.effect for line in lines), Decimal("0"))
