from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lotledger.errors import NotFoundError, ValidationError
from lotledger.models import Lot, LotWarehouseAllocation, StockAggregate, StockSnapshot
from lotledger.repositories.movement_repository import MovementRepository
from lotledger.repositories.product_repository import ProductRepository
from lotledger.schemas import DriftRow, KardexPage, KardexRow, SnapshotRow
from lotledger.utils import ZERO, as_utc, q4


class StockService:
    def __init__(self, db: Session):
        self._db = db
        self._products = ProductRepository(db)
        self._movements = MovementRepository(db)

    def get_stock(self, product_id: int, warehouse_id: Optional[int] = None) -> Decimal:
        if self._products.get(product_id) is None:
            raise NotFoundError("Product", product_id)
        stmt = select(func.coalesce(func.sum(StockAggregate.quantity), 0)).where(
            StockAggregate.product_id == product_id
        )
        if warehouse_id is not None:
            stmt = stmt.where(StockAggregate.warehouse_id == warehouse_id)
        return q4(self._db.scalar(stmt) or 0)

    def stock_by_warehouse(self, product_id: int) -> dict[int, Decimal]:
        rows = self._db.execute(
            select(StockAggregate.warehouse_id, StockAggregate.quantity)
            .where(StockAggregate.product_id == product_id)
            .order_by(StockAggregate.warehouse_id)
        ).all()
        return {warehouse_id: q4(quantity) for warehouse_id, quantity in rows}

    def initial_stock_snapshot(self, day: date) -> list[SnapshotRow]:
        """Opening stock for ``day`` as recorded by the daily snapshot job."""
        rows = self._db.scalars(
            select(StockSnapshot)
            .where(StockSnapshot.day == day)
            .order_by(StockSnapshot.product_id, StockSnapshot.warehouse_id)
        )
        return [SnapshotRow.model_validate(row) for row in rows]

    def find_aggregate_drift(self) -> list[DriftRow]:
        """
        Offline audit: (product, warehouse) pairs whose stock total differs
        from the sum of lot allocations. Never used on the write path.
        """
        aggregates = {
            (product_id, warehouse_id): q4(quantity)
            for product_id, warehouse_id, quantity in self._db.execute(
                select(StockAggregate.product_id, StockAggregate.warehouse_id, StockAggregate.quantity)
            ).all()
        }
        allocated = {
            (product_id, warehouse_id): q4(total)
            for product_id, warehouse_id, total in self._db.execute(
                select(
                    Lot.product_id,
                    LotWarehouseAllocation.warehouse_id,
                    func.sum(LotWarehouseAllocation.available),
                )
                .join(Lot, Lot.id == LotWarehouseAllocation.lot_id)
                .group_by(Lot.product_id, LotWarehouseAllocation.warehouse_id)
            ).all()
        }

        drift: list[DriftRow] = []
        for key in sorted(set(aggregates) | set(allocated)):
            agg = aggregates.get(key, ZERO)
            alloc = allocated.get(key, ZERO)
            if agg != alloc:
                drift.append(
                    DriftRow(
                        product_id=key[0],
                        warehouse_id=key[1],
                        aggregate_quantity=agg,
                        allocated_quantity=alloc,
                    )
                )
        return drift

    def kardex(
        self,
        product_id: int,
        warehouse_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
        descending: bool = True,
    ) -> KardexPage:
        """Movement-line history of a product with inflow, outflow and balance over the whole filter."""
        if self._products.get(product_id) is None:
            raise NotFoundError("Product", product_id)
        if page < 1 or not 1 <= limit <= 500:
            raise ValidationError("page must be >= 1 and limit between 1 and 500")
        date_from = as_utc(date_from)
        date_to = as_utc(date_to)

        pairs = self._movements.kardex_lines(
            product_id,
            warehouse_id=warehouse_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=(page - 1) * limit,
            descending=descending,
        )
        inflow, outflow, total = self._movements.kardex_totals(
            product_id, warehouse_id=warehouse_id, date_from=date_from, date_to=date_to
        )
        rows = [
            KardexRow(
                movement_id=movement.id,
                line_id=line.id,
                occurred_at=as_utc(movement.occurred_at),
                type=movement.type,
                warehouse_id=line.warehouse_id,
                lot_id=line.lot_id,
                quantity=q4(line.quantity),
                inflow=q4(line.quantity) if line.effect == 1 else ZERO,
                outflow=q4(line.quantity) if line.effect == -1 else ZERO,
            )
            for movement, line in pairs
        ]
        return KardexPage(
            product_id=product_id,
            warehouse_id=warehouse_id,
            rows=rows,
            total=total,
            page=page,
            limit=limit,
            inflow=inflow,
            outflow=outflow,
            balance=inflow - outflow,
        )
