from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lotledger.config import LedgerConfig, ShortfallPolicy, load_ledger_config
from lotledger.errors import InsufficientStockError, NotFoundError
from lotledger.logging_setup import get_logger
from lotledger.models import Movement, MovementType, PendingConsumption, Product, new_id
from lotledger.repositories.movement_repository import MovementRepository
from lotledger.repositories.product_repository import ProductRepository
from lotledger.schemas import (
    ConsumptionResult,
    MovementLineRead,
    ReconcileResult,
    SaleConsumptionCreate,
)
from lotledger.services.fifo import FifoAllocator, FifoSlice
from lotledger.services.stock_aggregate import apply_stock_delta
from lotledger.tx import ledger_transaction
from lotledger.utils import ZERO, as_utc, q4, utcnow

logger = get_logger(__name__)

SALE_REFERENCE = "SALE"
RECONCILE_REFERENCE = "PENDING_RECONCILE"


class ConsumptionService:
    def __init__(self, db: Session, config: Optional[LedgerConfig] = None):
        self._db = db
        self._config = config or load_ledger_config()
        self._products = ProductRepository(db)
        self._movements = MovementRepository(db)
        self._fifo = FifoAllocator(
            db,
            policy=self._config.ledger.ordering_policy,
            batch_size=self._config.ledger.fifo_batch_size,
        )

    def _get_product(self, product_id: int) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    def _check_warehouse(self, warehouse_id: Optional[int]) -> None:
        if warehouse_id is not None and self._products.get_warehouse(warehouse_id) is None:
            raise NotFoundError("Warehouse", warehouse_id)

    def _record_slices(
        self,
        movement: Movement,
        product_id: int,
        slices: list[FifoSlice],
        deltas: dict[tuple[int, int], Decimal],
    ) -> None:
        for s in slices:
            self._movements.add_line(
                movement,
                product_id=product_id,
                quantity=s.quantity,
                effect=-1,
                lot_id=s.lot.id,
                warehouse_id=s.warehouse_id,
            )
            deltas[(product_id, s.warehouse_id)] -= s.quantity

    def _flush_deltas(self, deltas: dict[tuple[int, int], Decimal]) -> None:
        for (product_id, warehouse_id), delta in sorted(deltas.items()):
            apply_stock_delta(self._db, product_id, warehouse_id, delta)

    def _pending_for_reference(self, sale_reference: str) -> Decimal:
        total = self._db.scalar(
            select(func.coalesce(func.sum(PendingConsumption.quantity), 0)).where(
                PendingConsumption.sale_reference == sale_reference
            )
        )
        return q4(total or 0)

    def _replay(self, movement: Movement, sale_reference: str) -> ConsumptionResult:
        lines = self._movements.lines_for(movement.id)
        applied = sum((q4(line.quantity) for line in lines), ZERO)
        return ConsumptionResult(
            movement_id=movement.id,
            applied=applied,
            pending=self._pending_for_reference(sale_reference),
            idempotent=True,
            lines=[MovementLineRead.model_validate(line) for line in lines],
        )

    def consume_for_sale(self, payload: SaleConsumptionCreate) -> ConsumptionResult:
        existing = self._movements.find_by_reference(
            SALE_REFERENCE, payload.sale_reference, MovementType.SALE
        )
        if existing is not None:
            return self._replay(existing, payload.sale_reference)

        self._get_product(payload.product_id)
        self._check_warehouse(payload.warehouse_id)
        policy = payload.shortfall_policy or self._config.ledger.shortfall_policy
        quantity = q4(payload.quantity)

        pending_id: Optional[str] = None
        with ledger_transaction(self._db, idempotency_key=payload.sale_reference):
            movement = self._movements.create(
                MovementType.SALE,
                occurred_at=as_utc(payload.occurred_at) or utcnow(),
                reference_type=SALE_REFERENCE,
                reference_id=payload.sale_reference,
                source_warehouse_id=payload.warehouse_id,
                note=payload.note,
            )
            slices, remaining = self._fifo.draw(
                payload.product_id, quantity, warehouse_id=payload.warehouse_id
            )
            if remaining > 0 and policy == ShortfallPolicy.REJECT:
                raise InsufficientStockError(
                    "Insufficient stock for sale",
                    product_id=payload.product_id,
                    requested=quantity,
                    missing=remaining,
                )

            deltas: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
            self._record_slices(movement, payload.product_id, slices, deltas)
            self._flush_deltas(deltas)

            if remaining > 0:
                pending = PendingConsumption(
                    product_id=payload.product_id,
                    warehouse_id=payload.warehouse_id,
                    quantity=remaining,
                    sale_reference=payload.sale_reference,
                    unit_price=payload.unit_price,
                    note=payload.note,
                )
                self._db.add(pending)
                self._db.flush()
                pending_id = pending.id

            applied = quantity - remaining
            movement_id = movement.id
            result_lines = [MovementLineRead.model_validate(line) for line in movement.lines]

        logger.info(
            "sale_consumed",
            movement_id=movement_id,
            product_id=payload.product_id,
            warehouse_id=payload.warehouse_id,
            sale_reference=payload.sale_reference,
            applied=str(applied),
            pending=str(remaining),
        )
        return ConsumptionResult(
            movement_id=movement_id,
            applied=applied,
            pending=remaining,
            pending_id=pending_id,
            lines=result_lines,
        )

    def reconcile_pending(self, product_id: Optional[int] = None, max_rows: int = 200) -> ReconcileResult:
        """Settle pending consumptions, oldest first, against the stock now on hand."""
        run_id = new_id()
        applied = ZERO
        settled = 0
        touched = 0
        movement_id: Optional[str] = None

        with ledger_transaction(self._db):
            stmt = select(PendingConsumption)
            if product_id is not None:
                stmt = stmt.where(PendingConsumption.product_id == product_id)
            stmt = (
                stmt.order_by(PendingConsumption.created_at, PendingConsumption.id)
                .limit(max_rows)
                .with_for_update(skip_locked=True)
            )
            rows = list(self._db.scalars(stmt))

            movement: Optional[Movement] = None
            deltas: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
            for row in rows:
                wanted = q4(row.quantity)
                slices, remaining = self._fifo.draw(
                    row.product_id, wanted, warehouse_id=row.warehouse_id
                )
                taken = wanted - remaining
                if taken <= 0:
                    continue
                if movement is None:
                    movement = self._movements.create(
                        MovementType.SALE,
                        occurred_at=utcnow(),
                        reference_type=RECONCILE_REFERENCE,
                        reference_id=run_id,
                        note="pending consumption reconciliation",
                    )
                self._record_slices(movement, row.product_id, slices, deltas)
                applied += taken
                touched += 1
                if remaining <= 0:
                    self._db.delete(row)
                    settled += 1
                else:
                    row.quantity = remaining

            self._flush_deltas(deltas)
            if movement is not None:
                movement_id = movement.id

        if touched:
            logger.info(
                "pending_reconciled",
                movement_id=movement_id,
                product_id=product_id,
                applied=str(applied),
                rows_settled=settled,
                rows_touched=touched,
            )
        return ReconcileResult(
            movement_id=movement_id,
            applied=applied,
            rows_settled=settled,
            rows_touched=touched,
        )

    def list_pending(self, product_id: Optional[int] = None, limit: int = 200) -> list[PendingConsumption]:
        stmt = select(PendingConsumption)
        if product_id is not None:
            stmt = stmt.where(PendingConsumption.product_id == product_id)
        return list(
            self._db.scalars(
                stmt.order_by(PendingConsumption.created_at, PendingConsumption.id).limit(limit)
            )
        )
