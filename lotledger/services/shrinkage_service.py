from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from lotledger.config import LedgerConfig, load_ledger_config
from lotledger.errors import InsufficientStockError, NotFoundError, ValidationError
from lotledger.logging_setup import get_logger
from lotledger.models import Movement, MovementType
from lotledger.repositories.lot_repository import LotRepository
from lotledger.repositories.movement_repository import MovementRepository
from lotledger.repositories.product_repository import ProductRepository
from lotledger.schemas import MovementResult, ShrinkageCreate, ShrinkageLineCreate
from lotledger.services.fifo import FifoAllocator
from lotledger.services.stock_aggregate import apply_stock_delta
from lotledger.services.transfer_service import movement_result
from lotledger.tx import ledger_transaction
from lotledger.utils import ZERO, as_utc, q4, utcnow

logger = get_logger(__name__)

SHRINKAGE_REFERENCE = "SHRINKAGE"


class ShrinkageService:
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

    def _from_lot(self, movement: Movement, line: ShrinkageLineCreate, quantity: Decimal) -> None:
        lot = self._lots.lock_lot(line.lot_id)
        if lot is None:
            raise NotFoundError("Lot", line.lot_id)
        if lot.product_id != line.product_id:
            raise ValidationError(
                "Lot does not belong to the given product",
                lot_id=line.lot_id,
                product_id=line.product_id,
            )
        allocation = self._lots.lock_allocation(lot.id, line.warehouse_id)
        if allocation is None or q4(allocation.available) < quantity or q4(lot.available) < quantity:
            raise InsufficientStockError(
                "Insufficient stock in lot for shrinkage",
                lot_id=line.lot_id,
                warehouse_id=line.warehouse_id,
                requested=quantity,
            )
        allocation.available = q4(allocation.available) - quantity
        lot.available = q4(lot.available) - quantity
        self._movements.add_line(
            movement,
            product_id=line.product_id,
            quantity=quantity,
            effect=-1,
            lot_id=lot.id,
            warehouse_id=line.warehouse_id,
        )

    def _from_fifo(self, movement: Movement, line: ShrinkageLineCreate, quantity: Decimal) -> None:
        slices, remaining = self._fifo.draw(line.product_id, quantity, warehouse_id=line.warehouse_id)
        if remaining > 0:
            raise InsufficientStockError(
                "Insufficient stock for shrinkage",
                product_id=line.product_id,
                warehouse_id=line.warehouse_id,
                requested=quantity,
                missing=remaining,
            )
        for s in slices:
            self._movements.add_line(
                movement,
                product_id=line.product_id,
                quantity=s.quantity,
                effect=-1,
                lot_id=s.lot.id,
                warehouse_id=s.warehouse_id,
            )

    def register_shrinkage(self, payload: ShrinkageCreate) -> MovementResult:
        if payload.reference:
            existing = self._movements.find_by_reference(
                SHRINKAGE_REFERENCE, payload.reference, MovementType.SHRINKAGE
            )
            if existing is not None:
                return movement_result(existing, idempotent=True)

        for line in payload.lines:
            if self._products.get(line.product_id) is None:
                raise NotFoundError("Product", line.product_id)
            if self._products.get_warehouse(line.warehouse_id) is None:
                raise NotFoundError("Warehouse", line.warehouse_id)

        with ledger_transaction(self._db, idempotency_key=payload.reference):
            warehouses = {line.warehouse_id for line in payload.lines}
            movement = self._movements.create(
                MovementType.SHRINKAGE,
                occurred_at=as_utc(payload.occurred_at) or utcnow(),
                reference_type=SHRINKAGE_REFERENCE if payload.reference else None,
                reference_id=payload.reference,
                source_warehouse_id=next(iter(warehouses)) if len(warehouses) == 1 else None,
                note=payload.note,
            )
            deltas: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
            for line in payload.lines:
                quantity = q4(line.quantity)
                if line.lot_id:
                    self._from_lot(movement, line, quantity)
                else:
                    self._from_fifo(movement, line, quantity)
                deltas[(line.product_id, line.warehouse_id)] -= quantity

            for (product_id, warehouse_id), delta in sorted(deltas.items()):
                apply_stock_delta(self._db, product_id, warehouse_id, delta)
            result = movement_result(movement)

        logger.info(
            "shrinkage_registered",
            movement_id=result.movement_id,
            reference=payload.reference,
            lines=len(payload.lines),
        )
        return result
