from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from lotledger.config import LedgerConfig, load_ledger_config
from lotledger.db import dialect_name
from lotledger.errors import InsufficientStockError, NotFoundError, ValidationError
from lotledger.logging_setup import get_logger
from lotledger.models import Movement, MovementType, StockAggregate, StockSnapshot, new_id
from lotledger.repositories.lot_repository import LotRepository
from lotledger.repositories.movement_repository import MovementRepository
from lotledger.repositories.product_repository import ProductRepository
from lotledger.schemas import (
    CountAdjustmentCreate,
    CountAdjustmentResult,
    CountAdjustmentRow,
    MovementLineRead,
)
from lotledger.services.fifo import FifoAllocator
from lotledger.services.stock_aggregate import apply_stock_delta
from lotledger.tx import ledger_transaction
from lotledger.utils import ZERO, as_utc, q4, utcnow

logger = get_logger(__name__)

COUNT_REFERENCE = "COUNT"


def opening_day(occurred_at: datetime) -> date:
    """A count taken on a day is the opening stock of the next one."""
    return as_utc(occurred_at).date() + timedelta(days=1)


class AdjustmentService:
    """
    Physical stock counts.

    Each counted (product, warehouse) is compared with its stock total.
    A shortfall is taken out of the warehouse's lots oldest first; a
    surplus is added to the newest lot held there. Both are written as
    one ADJUSTMENT movement, and the counted quantity becomes the opening
    stock of the following day.
    """

    def __init__(self, db: Session, config: Optional[LedgerConfig] = None):
        self._db = db
        self._config = config or load_ledger_config()
        self._products = ProductRepository(db)
        self._lots = LotRepository(db)
        self._movements = MovementRepository(db)
        self._fifo = FifoAllocator(
            db,
            policy=self._config.ledger.ordering_policy,
            batch_size=self._config.ledger.fifo_batch_size,
        )

    def _lock_current(self, product_id: int, warehouse_id: int) -> Decimal:
        self._db.flush()
        value = self._db.scalar(
            select(StockAggregate.quantity)
            .where(
                StockAggregate.product_id == product_id,
                StockAggregate.warehouse_id == warehouse_id,
            )
            .with_for_update()
        )
        return q4(value or 0)

    def _take_out(self, movement: Movement, product_id: int, warehouse_id: int, quantity: Decimal) -> None:
        slices, remaining = self._fifo.draw(product_id, quantity, warehouse_id=warehouse_id)
        if remaining > 0:
            raise InsufficientStockError(
                "Lot detail does not cover the counted shortfall",
                product_id=product_id,
                warehouse_id=warehouse_id,
                requested=quantity,
                missing=remaining,
            )
        for s in slices:
            self._movements.add_line(
                movement,
                product_id=product_id,
                quantity=s.quantity,
                effect=-1,
                lot_id=s.lot.id,
                warehouse_id=warehouse_id,
            )

    def _add_in(self, movement: Movement, product_id: int, warehouse_id: int, quantity: Decimal) -> None:
        found = self._lots.latest_in_warehouse(product_id, warehouse_id)
        if found is None:
            raise ValidationError(
                "No lot of this product in the warehouse; register a receipt instead",
                product_id=product_id,
                warehouse_id=warehouse_id,
            )
        lot, allocation = found
        lot.available = q4(lot.available) + quantity
        allocation.available = q4(allocation.available) + quantity
        allocation.assigned = q4(allocation.assigned) + quantity
        self._movements.add_line(
            movement,
            product_id=product_id,
            quantity=quantity,
            effect=1,
            lot_id=lot.id,
            warehouse_id=warehouse_id,
        )

    def _record_opening_stock(
        self, day: date, product_id: int, warehouse_id: int, quantity: Decimal, movement_id: str
    ) -> None:
        self._db.flush()
        if dialect_name(self._db) == "postgresql":
            insert = pg_insert
        else:
            insert = sqlite_insert
        table = StockSnapshot.__table__
        stmt = insert(table).values(
            day=day,
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity=quantity,
            movement_id=movement_id,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.day, table.c.product_id, table.c.warehouse_id],
            set_={"quantity": stmt.excluded.quantity, "movement_id": stmt.excluded.movement_id},
        )
        self._db.execute(stmt)

    def _replay(self, movement: Movement) -> CountAdjustmentResult:
        return CountAdjustmentResult(
            movement_id=movement.id,
            reference_id=movement.reference_id,
            opening_day=opening_day(movement.occurred_at),
            lines=[MovementLineRead.model_validate(line) for line in self._movements.lines_for(movement.id)],
            idempotent=True,
        )

    def adjust_by_count(self, payload: CountAdjustmentCreate) -> CountAdjustmentResult:
        if payload.reference:
            existing = self._movements.find_by_reference(
                COUNT_REFERENCE, payload.reference, MovementType.ADJUSTMENT
            )
            if existing is not None:
                return self._replay(existing)

        seen: set[tuple[int, int]] = set()
        for line in payload.lines:
            key = (line.product_id, line.warehouse_id)
            if key in seen:
                raise ValidationError(
                    "Each product and warehouse may be counted once per adjustment",
                    product_id=line.product_id,
                    warehouse_id=line.warehouse_id,
                )
            seen.add(key)
            if self._products.get(line.product_id) is None:
                raise NotFoundError("Product", line.product_id)
            if self._products.get_warehouse(line.warehouse_id) is None:
                raise NotFoundError("Warehouse", line.warehouse_id)

        occurred_at = as_utc(payload.occurred_at) or utcnow()
        reference_id = payload.reference or f"COUNT-{new_id()}"
        day = opening_day(occurred_at)
        adjustments: list[CountAdjustmentRow] = []

        with ledger_transaction(self._db, idempotency_key=payload.reference):
            movement = self._movements.create(
                MovementType.ADJUSTMENT,
                occurred_at=occurred_at,
                reference_type=COUNT_REFERENCE,
                reference_id=reference_id,
                note=payload.note,
            )
            for line in sorted(payload.lines, key=lambda ln: (ln.product_id, ln.warehouse_id)):
                counted = q4(line.counted_quantity)
                current = self._lock_current(line.product_id, line.warehouse_id)
                delta = counted - current
                if delta < 0:
                    self._take_out(movement, line.product_id, line.warehouse_id, -delta)
                elif delta > 0:
                    self._add_in(movement, line.product_id, line.warehouse_id, delta)
                apply_stock_delta(self._db, line.product_id, line.warehouse_id, delta)
                self._record_opening_stock(day, line.product_id, line.warehouse_id, counted, movement.id)
                adjustments.append(
                    CountAdjustmentRow(
                        product_id=line.product_id,
                        warehouse_id=line.warehouse_id,
                        previous_quantity=current,
                        counted_quantity=counted,
                        delta=delta,
                    )
                )
            movement_id = movement.id
            lines = [MovementLineRead.model_validate(ml) for ml in movement.lines]

        logger.info(
            "count_adjusted",
            movement_id=movement_id,
            reference=reference_id,
            lines=len(adjustments),
            changed=sum(1 for a in adjustments if a.delta != ZERO),
        )
        return CountAdjustmentResult(
            movement_id=movement_id,
            reference_id=reference_id,
            opening_day=day,
            adjustments=adjustments,
            lines=lines,
        )
