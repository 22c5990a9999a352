from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lotledger.errors import NotFoundError, ValidationError
from lotledger.logging_setup import get_logger
from lotledger.models import Lot, LotType, MovementType, Receipt, ReceiptLine, new_id
from lotledger.repositories.lot_repository import LotRepository
from lotledger.repositories.movement_repository import MovementRepository
from lotledger.repositories.product_repository import ProductRepository
from lotledger.schemas import (
    QuickReceiptCreate,
    ReceiptCreate,
    ReceiptLineCreate,
    ReceiptRead,
    ReceiptResult,
)
from lotledger.services.stock_aggregate import apply_stock_delta
from lotledger.tx import ledger_transaction
from lotledger.utils import as_utc, q4, utcnow

logger = get_logger(__name__)

RECEIPT_REFERENCE = "RECEIPT"


class ReceiptService:
    def __init__(self, db: Session):
        self._db = db
        self._products = ProductRepository(db)
        self._lots = LotRepository(db)
        self._movements = MovementRepository(db)

    def _find_by_supplier_reference(self, supplier_reference: str) -> Optional[Receipt]:
        return self._db.scalar(
            select(Receipt).where(Receipt.supplier_reference == supplier_reference)
        )

    def _validate_line(self, index: int, line: ReceiptLineCreate) -> None:
        total = q4(line.total_quantity)
        type1 = q4(line.quantity_type1)
        type2 = q4(line.quantity_type2)
        if total < 0 or type1 < 0 or type2 < 0:
            raise ValidationError("Receipt quantities must not be negative", line=index)
        if total == 0:
            raise ValidationError("Receipt line total must be greater than 0", line=index)
        if type1 + type2 != total:
            raise ValidationError(
                "Lot type quantities must add up to the line total",
                line=index,
                total=total,
                split=type1 + type2,
            )
        if self._products.get(line.product_id) is None:
            raise NotFoundError("Product", line.product_id)

    def _result(self, receipt: Receipt, idempotent: bool = False) -> ReceiptResult:
        movement = self._movements.find_by_reference(RECEIPT_REFERENCE, receipt.id, MovementType.INBOUND)
        return ReceiptResult(
            receipt=ReceiptRead.model_validate(receipt),
            movement_id=movement.id if movement is not None else None,
            lot_ids=[lot.id for line in receipt.lines for lot in line.lots],
            idempotent=idempotent,
        )

    def register_receipt(self, payload: ReceiptCreate) -> ReceiptResult:
        """
        Turn a supplier receipt into lots.

        Each line yields one lot per lot type with a positive quantity,
        fully allocated to the destination warehouse. A supplier reference
        seen before returns the receipt already on file.
        """
        existing = self._find_by_supplier_reference(payload.supplier_reference)
        if existing is not None:
            return self._result(existing, idempotent=True)

        if not payload.lines:
            raise ValidationError("Receipt must have at least one line")
        for index, line in enumerate(payload.lines):
            self._validate_line(index, line)
        if self._products.get_warehouse(payload.warehouse_id) is None:
            raise NotFoundError("Warehouse", payload.warehouse_id)

        received_at = as_utc(payload.received_at) or utcnow()
        lot_count = 0
        with ledger_transaction(self._db, idempotency_key=payload.supplier_reference):
            receipt = Receipt(
                received_at=received_at,
                supplier_reference=payload.supplier_reference,
                supplier_name=payload.supplier_name,
                note=payload.note,
            )
            self._db.add(receipt)
            self._db.flush()

            movement = self._movements.create(
                MovementType.INBOUND,
                occurred_at=received_at,
                reference_type=RECEIPT_REFERENCE,
                reference_id=receipt.id,
                destination_warehouse_id=payload.warehouse_id,
                note=payload.note,
            )

            for position, line in enumerate(payload.lines):
                receipt_line = ReceiptLine(
                    position=position,
                    product_id=line.product_id,
                    unit=line.unit,
                    total_quantity=q4(line.total_quantity),
                    quantity_type1=q4(line.quantity_type1),
                    quantity_type2=q4(line.quantity_type2),
                    billing_entity=line.billing_entity,
                )
                receipt.lines.append(receipt_line)
                self._db.flush()

                for lot_type, quantity in (
                    (LotType.TYPE_1, q4(line.quantity_type1)),
                    (LotType.TYPE_2, q4(line.quantity_type2)),
                ):
                    if quantity <= 0:
                        continue
                    lot = Lot(
                        product_id=line.product_id,
                        origin_date=received_at,
                        lot_type=int(lot_type),
                        initial_quantity=quantity,
                        available=quantity,
                    )
                    receipt_line.lots.append(lot)
                    self._db.flush()
                    self._lots.upsert_allocation(lot.id, payload.warehouse_id, quantity)
                    self._movements.add_line(
                        movement,
                        product_id=line.product_id,
                        quantity=quantity,
                        effect=1,
                        lot_id=lot.id,
                        warehouse_id=payload.warehouse_id,
                    )
                    apply_stock_delta(self._db, line.product_id, payload.warehouse_id, quantity)
                    lot_count += 1

            receipt_id = receipt.id

        logger.info(
            "receipt_registered",
            receipt_id=receipt_id,
            supplier_reference=payload.supplier_reference,
            warehouse_id=payload.warehouse_id,
            lots=lot_count,
        )
        return self._result(self.get_receipt(receipt_id))

    def register_quick_receipt(self, payload: QuickReceiptCreate) -> ReceiptResult:
        """Receipt without a supplier document: auto-numbered, every unit lot type 1."""
        stamp = utcnow()
        return self.register_receipt(
            ReceiptCreate(
                supplier_reference=f"QR-{stamp:%Y%m%d%H%M%S}-{new_id()[:8]}",
                warehouse_id=payload.warehouse_id,
                received_at=payload.received_at or stamp,
                note=payload.note,
                lines=[
                    ReceiptLineCreate(
                        product_id=line.product_id,
                        unit=line.unit,
                        total_quantity=line.quantity,
                        quantity_type1=line.quantity,
                        quantity_type2=0,
                    )
                    for line in payload.lines
                ],
            )
        )

    def get_receipt(self, receipt_id: str) -> Receipt:
        receipt = self._db.get(Receipt, receipt_id)
        if receipt is None:
            raise NotFoundError("Receipt", receipt_id)
        return receipt

    def update_note(self, receipt_id: str, note: Optional[str]) -> Receipt:
        with ledger_transaction(self._db):
            receipt = self.get_receipt(receipt_id)
            receipt.note = note
        return self.get_receipt(receipt_id)
