from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Select, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from lotledger.config import OrderingPolicy
from lotledger.db import dialect_name
from lotledger.models import Lot, LotWarehouseAllocation, new_id


def lock_options(policy: OrderingPolicy) -> dict[str, Any]:
    """Keyword arguments for ``Select.with_for_update`` under an ordering policy."""
    if policy == OrderingPolicy.FIFO_SKIP_LOCKED:
        return {"skip_locked": True}
    return {}


def fifo_order() -> tuple:
    return (Lot.origin_date, Lot.created_at, Lot.id)


def fifo_candidates_stmt(
    product_id: int,
    policy: OrderingPolicy,
    limit: int,
    warehouse_id: Optional[int] = None,
    exclude_ids: Optional[set[str]] = None,
) -> Select:
    """
    Oldest eligible lots of a product, locked for update.

    With a warehouse the allocation row is selected (and locked) with the
    lot. Under FIFO_SKIP_LOCKED rows held by concurrent consumers are
    skipped, so ordering is oldest-first among the rows this transaction
    could lock.
    """
    filters = [
        Lot.product_id == product_id,
        Lot.blocked.is_(False),
        Lot.available > 0,
    ]
    if warehouse_id is None:
        stmt = select(Lot)
    else:
        stmt = select(Lot, LotWarehouseAllocation).join(
            LotWarehouseAllocation, LotWarehouseAllocation.lot_id == Lot.id
        )
        filters += [
            LotWarehouseAllocation.warehouse_id == warehouse_id,
            LotWarehouseAllocation.available > 0,
        ]
    if exclude_ids:
        filters.append(Lot.id.not_in(exclude_ids))
    return (
        stmt.where(*filters)
        .order_by(*fifo_order())
        .limit(limit)
        .with_for_update(**lock_options(policy))
        .execution_options(populate_existing=True)
    )


class LotRepository:
    def __init__(self, db: Session):
        self._db = db

    def add_lot(self, lot: Lot) -> None:
        self._db.add(lot)

    def get(self, lot_id: str) -> Optional[Lot]:
        return self._db.get(Lot, lot_id)

    def lock_lot(self, lot_id: str) -> Optional[Lot]:
        self._db.flush()
        return self._db.scalar(
            select(Lot)
            .where(Lot.id == lot_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def lock_allocation(self, lot_id: str, warehouse_id: int) -> Optional[LotWarehouseAllocation]:
        self._db.flush()
        return self._db.scalar(
            select(LotWarehouseAllocation)
            .where(
                LotWarehouseAllocation.lot_id == lot_id,
                LotWarehouseAllocation.warehouse_id == warehouse_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def lock_allocations_for_lot(self, lot_id: str) -> list[LotWarehouseAllocation]:
        self._db.flush()
        return list(
            self._db.scalars(
                select(LotWarehouseAllocation)
                .where(
                    LotWarehouseAllocation.lot_id == lot_id,
                    LotWarehouseAllocation.available > 0,
                )
                .order_by(LotWarehouseAllocation.warehouse_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        )

    def fifo_candidates(
        self,
        product_id: int,
        policy: OrderingPolicy,
        limit: int,
        exclude_ids: Optional[set[str]] = None,
    ) -> list[Lot]:
        self._db.flush()
        stmt = fifo_candidates_stmt(product_id, policy, limit, exclude_ids=exclude_ids)
        return list(self._db.scalars(stmt))

    def fifo_candidates_in_warehouse(
        self,
        product_id: int,
        warehouse_id: int,
        policy: OrderingPolicy,
        limit: int,
        exclude_ids: Optional[set[str]] = None,
    ) -> list[tuple[Lot, LotWarehouseAllocation]]:
        self._db.flush()
        stmt = fifo_candidates_stmt(
            product_id, policy, limit, warehouse_id=warehouse_id, exclude_ids=exclude_ids
        )
        return [(lot, alloc) for lot, alloc in self._db.execute(stmt).all()]

    def latest_in_warehouse(
        self, product_id: int, warehouse_id: int
    ) -> Optional[tuple[Lot, LotWarehouseAllocation]]:
        """Newest unblocked lot of a product holding an allocation in the warehouse, locked."""
        self._db.flush()
        row = self._db.execute(
            select(Lot, LotWarehouseAllocation)
            .join(LotWarehouseAllocation, LotWarehouseAllocation.lot_id == Lot.id)
            .where(
                Lot.product_id == product_id,
                Lot.blocked.is_(False),
                LotWarehouseAllocation.warehouse_id == warehouse_id,
            )
            .order_by(Lot.origin_date.desc(), Lot.created_at.desc(), Lot.id.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if row is None:
            return None
        return row[0], row[1]

    def upsert_allocation(self, lot_id: str, warehouse_id: int, quantity: Decimal) -> None:
        """Create the (lot, warehouse) allocation or add ``quantity`` to both assigned and available."""
        self._db.flush()
        if dialect_name(self._db) == "postgresql":
            insert = pg_insert
        else:
            insert = sqlite_insert
        table = LotWarehouseAllocation.__table__
        stmt = insert(table).values(
            id=new_id(),
            lot_id=lot_id,
            warehouse_id=warehouse_id,
            assigned=quantity,
            available=quantity,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.lot_id, table.c.warehouse_id],
            set_={
                "assigned": table.c.assigned + stmt.excluded.assigned,
                "available": table.c.available + stmt.excluded.available,
            },
        )
        self._db.execute(stmt)

    def list_lots(
        self,
        product_id: Optional[int] = None,
        warehouse_id: Optional[int] = None,
        only_available: bool = True,
        limit: int = 200,
    ) -> list[Lot]:
        stmt = select(Lot)
        if product_id is not None:
            stmt = stmt.where(Lot.product_id == product_id)
        if warehouse_id is not None:
            stmt = stmt.where(
                Lot.id.in_(
                    select(LotWarehouseAllocation.lot_id).where(
                        LotWarehouseAllocation.warehouse_id == warehouse_id,
                        LotWarehouseAllocation.available > 0,
                    )
                )
            )
        if only_available:
            stmt = stmt.where(Lot.available > 0)
        return list(self._db.scalars(stmt.order_by(*fifo_order()).limit(limit)))
