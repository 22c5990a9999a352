from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from lotledger.errors import InsufficientStockError, NotFoundError, ValidationError
from lotledger.logging_setup import get_logger
from lotledger.models import Lot, LotType, Movement, MovementType, new_id
from lotledger.repositories.lot_repository import LotRepository
from lotledger.repositories.movement_repository import MovementRepository
from lotledger.repositories.product_repository import ProductRepository
from lotledger.schemas import FractionationCreate, FractionationFactorCreate, MovementResult
from lotledger.services.stock_aggregate import apply_stock_delta
from lotledger.services.transfer_service import movement_result
from lotledger.tx import ledger_transaction
from lotledger.utils import ZERO, as_utc, q4, utcnow

logger = get_logger(__name__)

FRACTION_REFERENCE = "FRACTION"
FRACTION_FACTOR_REFERENCE = "FRACTION_FACTOR"


class FractionationService:
    def __init__(self, db: Session):
        self._db = db
        self._products = ProductRepository(db)
        self._lots = LotRepository(db)
        self._movements = MovementRepository(db)

    def _check_product(self, product_id: int) -> None:
        if self._products.get(product_id) is None:
            raise NotFoundError("Product", product_id)

    def _check_warehouse(self, warehouse_id: int) -> None:
        if self._products.get_warehouse(warehouse_id) is None:
            raise NotFoundError("Warehouse", warehouse_id)

    def _split_line(
        self,
        movement: Movement,
        lot_id: str,
        source_product_id: int,
        warehouse_id: int,
        consumed: Decimal,
        destinations: list[tuple[int, Decimal]],
        deltas: dict[tuple[int, int], Decimal],
    ) -> None:
        lot = self._lots.lock_lot(lot_id)
        if lot is None:
            raise NotFoundError("Lot", lot_id)
        if lot.product_id != source_product_id:
            raise ValidationError(
                "Lot does not belong to the declared source product",
                lot_id=lot_id,
                product_id=source_product_id,
            )
        if lot.blocked:
            raise ValidationError("Lot is blocked", lot_id=lot_id)

        allocation = self._lots.lock_allocation(lot.id, warehouse_id)
        if q4(lot.available) < consumed or allocation is None or q4(allocation.available) < consumed:
            raise InsufficientStockError(
                "Insufficient stock in lot for fractionation",
                lot_id=lot_id,
                warehouse_id=warehouse_id,
                requested=consumed,
            )

        lot.available = q4(lot.available) - consumed
        allocation.available = q4(allocation.available) - consumed
        self._movements.add_line(
            movement,
            product_id=source_product_id,
            quantity=consumed,
            effect=-1,
            lot_id=lot.id,
            warehouse_id=warehouse_id,
        )
        deltas[(source_product_id, warehouse_id)] -= consumed

        for product_id, quantity in destinations:
            derived = Lot(
                receipt_line_id=lot.receipt_line_id,
                product_id=product_id,
                origin_date=lot.origin_date,
                lot_type=int(LotType.TYPE_1),
                initial_quantity=quantity,
                available=quantity,
            )
            self._lots.add_lot(derived)
            self._db.flush()
            self._lots.upsert_allocation(derived.id, warehouse_id, quantity)
            self._movements.add_line(
                movement,
                product_id=product_id,
                quantity=quantity,
                effect=1,
                lot_id=derived.id,
                warehouse_id=warehouse_id,
            )
            deltas[(product_id, warehouse_id)] += quantity

    def _run(
        self,
        reference_type: str,
        reference: Optional[str],
        occurred_at: Optional[datetime],
        note: Optional[str],
        lines: list[tuple[str, int, int, Decimal, list[tuple[int, Decimal]]]],
    ) -> MovementResult:
        if reference:
            existing = self._movements.find_by_reference(
                reference_type, reference, MovementType.ADJUSTMENT
            )
            if existing is not None:
                return movement_result(existing, idempotent=True)

        for _, source_product_id, warehouse_id, _, destinations in lines:
            self._check_product(source_product_id)
            self._check_warehouse(warehouse_id)
            for product_id, _ in destinations:
                self._check_product(product_id)

        with ledger_transaction(self._db, idempotency_key=reference):
            movement = self._movements.create(
                MovementType.ADJUSTMENT,
                occurred_at=as_utc(occurred_at) or utcnow(),
                reference_type=reference_type,
                reference_id=reference or new_id(),
                note=note,
            )
            deltas: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
            for lot_id, source_product_id, warehouse_id, consumed, destinations in lines:
                self._split_line(
                    movement, lot_id, source_product_id, warehouse_id, consumed, destinations, deltas
                )
            for (product_id, warehouse_id), delta in sorted(deltas.items()):
                apply_stock_delta(self._db, product_id, warehouse_id, delta)
            result = movement_result(movement)

        logger.info(
            "fractionation_completed",
            movement_id=result.movement_id,
            reference_type=reference_type,
            reference=result.reference_id,
            lines=len(lines),
        )
        return result

    def fractionate(self, payload: FractionationCreate) -> MovementResult:
        """
        Split lots into derived products with explicit destination quantities.

        The source lot gives up ``source_quantity`` when provided, otherwise
        the sum of the destination quantities.
        """
        lines = []
        for line in payload.lines:
            destinations = [(d.product_id, q4(d.quantity)) for d in line.destinations]
            if line.source_quantity is not None:
                consumed = q4(line.source_quantity)
            else:
                consumed = sum((q for _, q in destinations), ZERO)
            if consumed <= 0 or any(q <= 0 for _, q in destinations):
                raise ValidationError("Fractionation quantities must be greater than 0", lot_id=line.lot_id)
            lines.append((line.lot_id, line.source_product_id, line.warehouse_id, consumed, destinations))
        return self._run(FRACTION_REFERENCE, payload.reference, payload.occurred_at, payload.note, lines)

    def fractionate_by_factor(self, payload: FractionationFactorCreate) -> MovementResult:
        """Split lots into one derived product each, yielding source quantity times factor."""
        lines = []
        for line in payload.lines:
            consumed = q4(line.source_quantity)
            produced = q4(q4(line.source_quantity) * line.factor)
            if consumed <= 0 or produced <= 0:
                raise ValidationError(
                    "Source quantity and factor must yield a positive quantity", lot_id=line.lot_id
                )
            lines.append(
                (
                    line.lot_id,
                    line.source_product_id,
                    line.warehouse_id,
                    consumed,
                    [(line.destination_product_id, produced)],
                )
            )
        return self._run(
            FRACTION_FACTOR_REFERENCE, payload.reference, payload.occurred_at, payload.note, lines
        )
