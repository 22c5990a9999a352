from __future__ import annotations

from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from lotledger.db import dialect_name
from lotledger.errors import InsufficientStockError
from lotledger.models import StockAggregate
from lotledger.utils import q4


def apply_stock_delta(db: Session, product_id: int, warehouse_id: int, delta: Decimal) -> None:
    """
    Add ``delta`` to the (product, warehouse) stock total.

    Runs as a single statement in the caller's transaction so concurrent
    writers never lose an update. Increments upsert the row; decrements
    update the existing row only, and a result below zero violates
    ``ck_stock_quantity_non_negative`` and aborts the transaction.
    """
    delta = q4(delta)
    if delta == 0:
        return

    db.flush()
    table = StockAggregate.__table__

    if delta < 0:
        result = db.execute(
            update(table)
            .where(table.c.product_id == product_id, table.c.warehouse_id == warehouse_id)
            .values(quantity=table.c.quantity + delta)
        )
        if result.rowcount == 0:
            raise InsufficientStockError(
                "No stock recorded for product in warehouse",
                product_id=product_id,
                warehouse_id=warehouse_id,
                requested=-delta,
            )
        return

    if dialect_name(db) == "postgresql":
        insert = pg_insert
    else:
        insert = sqlite_insert

    # the inserted row always carries a non-negative quantity
    stmt = insert(table).values(product_id=product_id, warehouse_id=warehouse_id, quantity=delta)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.product_id, table.c.warehouse_id],
        set_={"quantity": table.c.quantity + delta},
    )
    db.execute(stmt)
