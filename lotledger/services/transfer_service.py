from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from lotledger.config import LedgerConfig, load_ledger_config
from lotledger.errors import InsufficientStockError, NotFoundError
from lotledger.logging_setup import get_logger
from lotledger.models import Movement, MovementType
from lotledger.repositories.lot_repository import LotRepository
from lotledger.repositories.movement_repository import MovementRepository
from lotledger.repositories.product_repository import ProductRepository
from lotledger.schemas import MovementLineRead, MovementResult, TransferCreate
from lotledger.services.fifo import FifoAllocator
from lotledger.services.stock_aggregate import apply_stock_delta
from lotledger.tx import ledger_transaction
from lotledger.utils import ZERO, as_utc, q4, utcnow

logger = get_logger(__name__)

TRANSFER_REFERENCE = "TRANSFER"


def movement_result(movement: Movement, idempotent: bool = False) -> MovementResult:
    return MovementResult(
        movement_id=movement.id,
        type=movement.type,
        reference_type=movement.reference_type,
        reference_id=movement.reference_id,
        lines=[MovementLineRead.model_validate(line) for line in movement.lines],
        idempotent=idempotent,
    )


def _uniform(values: list[int]) -> Optional[int]:
    return values[0] if len(set(values)) == 1 else None


class TransferService:
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

    def _validate_refs(self, payload: TransferCreate) -> None:
        for line in payload.lines:
            if self._products.get(line.product_id) is None:
                raise NotFoundError("Product", line.product_id)
            for warehouse_id in (line.source_warehouse_id, line.destination_warehouse_id):
                if self._products.get_warehouse(warehouse_id) is None:
                    raise NotFoundError("Warehouse", warehouse_id)

    def transfer(self, payload: TransferCreate) -> MovementResult:
        """Move stock between warehouses; every line is covered in full or nothing moves."""
        if payload.reference:
            existing = self._movements.find_by_reference(
                TRANSFER_REFERENCE, payload.reference, MovementType.TRANSFER
            )
            if existing is not None:
                return movement_result(existing, idempotent=True)

        self._validate_refs(payload)

        with ledger_transaction(self._db, idempotency_key=payload.reference):
            movement = self._movements.create(
                MovementType.TRANSFER,
                occurred_at=as_utc(payload.occurred_at) or utcnow(),
                reference_type=TRANSFER_REFERENCE if payload.reference else None,
                reference_id=payload.reference,
                source_warehouse_id=_uniform([l.source_warehouse_id for l in payload.lines]),
                destination_warehouse_id=_uniform([l.destination_warehouse_id for l in payload.lines]),
                note=payload.note,
            )
            deltas: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)

            for line in payload.lines:
                quantity = q4(line.quantity)
                slices, remaining = self._fifo.draw(
                    line.product_id,
                    quantity,
                    warehouse_id=line.source_warehouse_id,
                    release_lot=False,
                )
                if remaining > 0:
                    raise InsufficientStockError(
                        "Insufficient stock in source warehouse",
                        product_id=line.product_id,
                        warehouse_id=line.source_warehouse_id,
                        requested=quantity,
                        missing=remaining,
                    )

                for s in slices:
                    self._lots.upsert_allocation(s.lot.id, line.destination_warehouse_id, s.quantity)
                    self._movements.add_line(
                        movement,
                        product_id=line.product_id,
                        quantity=s.quantity,
                        effect=-1,
                        lot_id=s.lot.id,
                        warehouse_id=line.source_warehouse_id,
                    )
                    self._movements.add_line(
                        movement,
                        product_id=line.product_id,
                        quantity=s.quantity,
                        effect=1,
                        lot_id=s.lot.id,
                        warehouse_id=line.destination_warehouse_id,
                    )
                deltas[(line.product_id, line.source_warehouse_id)] -= quantity
                deltas[(line.product_id, line.destination_warehouse_id)] += quantity

            for (product_id, warehouse_id), delta in sorted(deltas.items()):
                apply_stock_delta(self._db, product_id, warehouse_id, delta)
            result = movement_result(movement)

        logger.info(
            "transfer_completed",
            movement_id=result.movement_id,
            reference=payload.reference,
            lines=len(payload.lines),
        )
        return result
