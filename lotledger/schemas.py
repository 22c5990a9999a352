from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from lotledger.config import ShortfallPolicy
from lotledger.utils import QUANTUM


def _four_places(v: Decimal, field: str = "quantity") -> Decimal:
    """Quantities are stored with 4 fractional digits; finer input is rejected, never rounded."""
    if not v.is_finite():
        raise ValueError(f"{field} must be a number")
    try:
        quantized = v.quantize(QUANTUM)
    except InvalidOperation:
        raise ValueError(f"{field} is out of range") from None
    if quantized != v:
        raise ValueError(f"{field} allows at most 4 decimal places")
    return quantized


def _positive(v: Decimal, field: str = "quantity") -> Decimal:
    v = _four_places(v, field)
    if v <= 0:
        raise ValueError(f"{field} must be greater than 0")
    return v


class ReceiptLineCreate(BaseModel):
    product_id: int
    total_quantity: Decimal
    quantity_type1: Decimal = Decimal("0")
    quantity_type2: Decimal = Decimal("0")
    unit: Optional[str] = None
    billing_entity: Optional[str] = None

    @field_validator("total_quantity", "quantity_type1", "quantity_type2")
    @classmethod
    def quantities_have_four_places(cls, v: Decimal, info) -> Decimal:
        return _four_places(v, info.field_name)


class ReceiptCreate(BaseModel):
    supplier_reference: str
    warehouse_id: int
    received_at: Optional[datetime] = None
    supplier_name: Optional[str] = None
    note: Optional[str] = None
    lines: list[ReceiptLineCreate]

    @field_validator("supplier_reference")
    @classmethod
    def reference_must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("supplier_reference must not be empty")
        return v.strip()


class QuickReceiptLine(BaseModel):
    product_id: int
    quantity: Decimal
    unit: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: Decimal) -> Decimal:
        return _positive(v)


class QuickReceiptCreate(BaseModel):
    warehouse_id: int
    received_at: Optional[datetime] = None
    note: Optional[str] = None
    lines: list[QuickReceiptLine]


class ReceiptNoteUpdate(BaseModel):
    note: Optional[str] = None


class AllocationRead(BaseModel):
    warehouse_id: int
    assigned: Decimal
    available: Decimal

    model_config = {"from_attributes": True}


class LotRead(BaseModel):
    id: str
    receipt_line_id: str
    product_id: int
    origin_date: datetime
    lot_type: int
    initial_quantity: Decimal
    available: Decimal
    blocked: bool
    allocations: list[AllocationRead] = []

    model_config = {"from_attributes": True}


class ReceiptLineRead(BaseModel):
    id: str
    position: int
    product_id: int
    unit: Optional[str]
    total_quantity: Decimal
    quantity_type1: Decimal
    quantity_type2: Decimal
    billing_entity: Optional[str]
    lots: list[LotRead] = []

    model_config = {"from_attributes": True}


class ReceiptRead(BaseModel):
    id: str
    received_at: datetime
    supplier_reference: str
    supplier_name: Optional[str]
    note: Optional[str]
    lines: list[ReceiptLineRead] = []

    model_config = {"from_attributes": True}


class ReceiptResult(BaseModel):
    receipt: ReceiptRead
    movement_id: Optional[str] = None
    lot_ids: list[str] = []
    idempotent: bool = False


class SaleConsumptionCreate(BaseModel):
    product_id: int
    quantity: Decimal
    sale_reference: str
    warehouse_id: Optional[int] = None
    unit_price: Optional[Decimal] = None
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None
    shortfall_policy: Optional[ShortfallPolicy] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: Decimal) -> Decimal:
        return _positive(v)

    @field_validator("sale_reference")
    @classmethod
    def reference_must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("sale_reference must not be empty")
        return v.strip()


class MovementLineRead(BaseModel):
    product_id: int
    lot_id: Optional[str]
    warehouse_id: Optional[int]
    quantity: Decimal
    effect: int

    model_config = {"from_attributes": True}


class ConsumptionResult(BaseModel):
    movement_id: Optional[str] = None
    applied: Decimal
    pending: Decimal
    pending_id: Optional[str] = None
    idempotent: bool = False
    lines: list[MovementLineRead] = []


class MovementResult(BaseModel):
    movement_id: str
    type: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    lines: list[MovementLineRead] = []
    idempotent: bool = False


class TransferLineCreate(BaseModel):
    product_id: int
    quantity: Decimal
    source_warehouse_id: int
    destination_warehouse_id: int

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: Decimal) -> Decimal:
        return _positive(v)

    @model_validator(mode="after")
    def warehouses_must_differ(self) -> "TransferLineCreate":
        if self.source_warehouse_id == self.destination_warehouse_id:
            raise ValueError("source and destination warehouse must differ")
        return self


class TransferCreate(BaseModel):
    lines: list[TransferLineCreate] = Field(min_length=1)
    reference: Optional[str] = None
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None


class FractionDestination(BaseModel):
    product_id: int
    quantity: Decimal

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: Decimal) -> Decimal:
        return _positive(v)


class FractionLineCreate(BaseModel):
    lot_id: str
    source_product_id: int
    warehouse_id: int
    destinations: list[FractionDestination] = Field(min_length=1)
    source_quantity: Optional[Decimal] = None

    @field_validator("source_quantity")
    @classmethod
    def source_quantity_must_be_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is None:
            return v
        return _positive(v, "source_quantity")


class FractionationCreate(BaseModel):
    lines: list[FractionLineCreate] = Field(min_length=1)
    reference: Optional[str] = None
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None


class FractionFactorLineCreate(BaseModel):
    lot_id: str
    source_product_id: int
    warehouse_id: int
    source_quantity: Decimal
    destination_product_id: int
    factor: Decimal

    @field_validator("source_quantity")
    @classmethod
    def source_quantity_must_be_positive(cls, v: Decimal) -> Decimal:
        return _positive(v, "source_quantity")

    @field_validator("factor")
    @classmethod
    def factor_must_be_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("factor must be greater than 0")
        return v


class FractionationFactorCreate(BaseModel):
    lines: list[FractionFactorLineCreate] = Field(min_length=1)
    reference: Optional[str] = None
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None


class ShrinkageLineCreate(BaseModel):
    product_id: int
    warehouse_id: int
    quantity: Decimal
    lot_id: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: Decimal) -> Decimal:
        return _positive(v)


class ShrinkageCreate(BaseModel):
    lines: list[ShrinkageLineCreate] = Field(min_length=1)
    reference: Optional[str] = None
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None


class CountLineCreate(BaseModel):
    product_id: int
    warehouse_id: int
    counted_quantity: Decimal

    @field_validator("counted_quantity")
    @classmethod
    def counted_must_not_be_negative(cls, v: Decimal) -> Decimal:
        v = _four_places(v, "counted_quantity")
        if v < 0:
            raise ValueError("counted_quantity must be >= 0")
        return v


class CountAdjustmentCreate(BaseModel):
    lines: list[CountLineCreate] = Field(min_length=1)
    reference: Optional[str] = None
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None


class CountAdjustmentRow(BaseModel):
    product_id: int
    warehouse_id: int
    previous_quantity: Decimal
    counted_quantity: Decimal
    delta: Decimal


class CountAdjustmentResult(BaseModel):
    movement_id: str
    reference_id: str
    opening_day: date
    adjustments: list[CountAdjustmentRow] = []
    lines: list[MovementLineRead] = []
    idempotent: bool = False


class PendingRead(BaseModel):
    id: str
    created_at: datetime
    product_id: int
    warehouse_id: Optional[int]
    quantity: Decimal
    sale_reference: Optional[str]
    unit_price: Optional[Decimal]
    note: Optional[str]

    model_config = {"from_attributes": True}


class ReconcileResult(BaseModel):
    movement_id: Optional[str] = None
    applied: Decimal
    rows_settled: int = 0
    rows_touched: int = 0


class LotBlockUpdate(BaseModel):
    blocked: bool


class StockRead(BaseModel):
    product_id: int
    warehouse_id: Optional[int] = None
    quantity: Decimal


class SnapshotRow(BaseModel):
    day: date
    product_id: int
    warehouse_id: int
    quantity: Decimal
    movement_id: Optional[str] = None

    model_config = {"from_attributes": True}


class DriftRow(BaseModel):
    product_id: int
    warehouse_id: int
    aggregate_quantity: Decimal
    allocated_quantity: Decimal


class KardexRow(BaseModel):
    movement_id: str
    line_id: str
    occurred_at: datetime
    type: str
    warehouse_id: Optional[int]
    lot_id: Optional[str]
    quantity: Decimal
    inflow: Decimal
    outflow: Decimal


class KardexPage(BaseModel):
    product_id: int
    warehouse_id: Optional[int] = None
    rows: list[KardexRow]
    total: int
    page: int
    limit: int
    inflow: Decimal
    outflow: Decimal
    balance: Decimal


class ProductCreate(BaseModel):
    code: str
    name: str
    unit: Optional[str] = None
    base_price: Optional[Decimal] = None
    description: Optional[str] = None
    active: bool = True


class ProductUpdate(BaseModel):
    code: Optional[str] = None
    name: str
    unit: Optional[str] = None
    base_price: Optional[Decimal] = None
    description: Optional[str] = None
    active: bool = True


class ProductRead(BaseModel):
    id: int
    code: str
    name: str
    unit: Optional[str]
    base_price: Optional[Decimal]
    description: Optional[str]
    active: bool

    model_config = {"from_attributes": True}


class OutboxEventRead(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    last_error: Optional[str]
    next_retry_at: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class DispatchSummary(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    dead: int = 0
    skipped: int = 0
