from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lotledger.db import Base
from lotledger.utils import utcnow

Quantity = Numeric(18, 4)


def new_id() -> str:
    return str(uuid.uuid4())


class LotType(IntEnum):
    TYPE_1 = 1
    TYPE_2 = 2


# Lots were first tagged with a free-text colour, then migrated to a small integer.
LOT_TYPE_SCHEMA_VERSION = 2
LEGACY_COLOR_TO_LOT_TYPE: dict[str, LotType] = {
    "BLANCO": LotType.TYPE_1,
    "NEGRO": LotType.TYPE_2,
}


def lot_type_from_legacy(value: Any) -> LotType:
    if isinstance(value, LotType):
        return value
    if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
        return LotType(int(value))
    key = str(value or "").strip().upper()
    if key not in LEGACY_COLOR_TO_LOT_TYPE:
        raise ValueError(f"unmapped lot category: {value!r}")
    return LEGACY_COLOR_TO_LOT_TYPE[key]


class MovementType(str, Enum):
    INBOUND = "INBOUND"
    TRANSFER = "TRANSFER"
    SALE = "SALE"
    SHRINKAGE = "SHRINKAGE"
    ADJUSTMENT = "ADJUSTMENT"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    DEAD = "DEAD"


class Warehouse(Base):
    __tablename__ = "warehouses"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(128))


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    unit: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    base_price: Mapped[Optional[Decimal]] = mapped_column(Quantity, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")


class Receipt(Base):
    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    supplier_reference: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    supplier_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    lines: Mapped[list["ReceiptLine"]] = relationship(
        back_populates="receipt", order_by="ReceiptLine.position"
    )


class ReceiptLine(Base):
    __tablename__ = "receipt_lines"
    __table_args__ = (
        CheckConstraint(
            "quantity_type1 + quantity_type2 = total_quantity",
            name="ck_receipt_lines_split_sum",
        ),
        CheckConstraint(
            "quantity_type1 >= 0 AND quantity_type2 >= 0",
            name="ck_receipt_lines_split_non_negative",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    receipt_id: Mapped[str] = mapped_column(
        ForeignKey("receipts.id", ondelete="RESTRICT"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    unit: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    total_quantity: Mapped[Decimal] = mapped_column(Quantity)
    quantity_type1: Mapped[Decimal] = mapped_column(Quantity)
    quantity_type2: Mapped[Decimal] = mapped_column(Quantity)
    billing_entity: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    receipt: Mapped[Receipt] = relationship(back_populates="lines")
    lots: Mapped[list["Lot"]] = relationship(back_populates="receipt_line", order_by="Lot.lot_type")


class Lot(Base):
    __tablename__ = "lots"
    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_lots_available_non_negative"),
        CheckConstraint("lot_type IN (1, 2)", name="ck_lots_lot_type"),
        Index("ix_lots_fifo", "product_id", "origin_date", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    receipt_line_id: Mapped[str] = mapped_column(
        ForeignKey("receipt_lines.id", ondelete="RESTRICT"), index=True
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    origin_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    lot_type: Mapped[int] = mapped_column(SmallInteger, index=True)
    initial_quantity: Mapped[Decimal] = mapped_column(Quantity)
    available: Mapped[Decimal] = mapped_column(Quantity)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    receipt_line: Mapped[ReceiptLine] = relationship(back_populates="lots")
    allocations: Mapped[list["LotWarehouseAllocation"]] = relationship(
        back_populates="lot", order_by="LotWarehouseAllocation.warehouse_id"
    )


class LotWarehouseAllocation(Base):
    __tablename__ = "lot_warehouse_allocations"
    __table_args__ = (
        UniqueConstraint("lot_id", "warehouse_id", name="ux_lot_warehouse"),
        CheckConstraint("available >= 0", name="ck_allocations_available_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    lot_id: Mapped[str] = mapped_column(ForeignKey("lots.id", ondelete="RESTRICT"), index=True)
    warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id"), index=True)
    assigned: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))
    available: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))

    lot: Mapped[Lot] = relationship(back_populates="allocations")


class Movement(Base):
    __tablename__ = "movements"
    __table_args__ = (
        UniqueConstraint("reference_type", "reference_id", name="ux_movements_reference"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(16), index=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    source_warehouse_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("warehouses.id"), nullable=True
    )
    destination_warehouse_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("warehouses.id"), nullable=True
    )
    reference_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    lines: Mapped[list["MovementLine"]] = relationship(
        back_populates="movement", order_by="MovementLine.position"
    )


class MovementLine(Base):
    __tablename__ = "movement_lines"
    __table_args__ = (
        CheckConstraint("effect IN (-1, 1)", name="ck_movement_lines_effect"),
        CheckConstraint("quantity > 0", name="ck_movement_lines_quantity_positive"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    movement_id: Mapped[str] = mapped_column(ForeignKey("movements.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    lot_id: Mapped[Optional[str]] = mapped_column(ForeignKey("lots.id"), nullable=True, index=True)
    warehouse_id: Mapped[Optional[int]] = mapped_column(ForeignKey("warehouses.id"), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Quantity)
    effect: Mapped[int] = mapped_column(SmallInteger)

    movement: Mapped[Movement] = relationship(back_populates="lines")


class StockAggregate(Base):
    __tablename__ = "stock_aggregates"
    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="ux_stock_product_warehouse"),
        CheckConstraint("quantity >= 0", name="ck_stock_quantity_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id"), index=True)
    quantity: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))


class PendingConsumption(Base):
    __tablename__ = "pending_consumptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    warehouse_id: Mapped[Optional[int]] = mapped_column(ForeignKey("warehouses.id"), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Quantity)
    sale_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Quantity, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"
    __table_args__ = (Index("ix_outbox_status_next_retry", "status", "next_retry_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    aggregate_type: Mapped[str] = mapped_column(String(60))
    aggregate_id: Mapped[str] = mapped_column(String(80))
    event_type: Mapped[str] = mapped_column(String(60), index=True)
    payload: Mapped[dict] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(20), default=OutboxStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class StockSnapshot(Base):
    """Daily opening stock. Written by the snapshot job outside the ledger and by count adjustments."""

    __tablename__ = "stock_snapshots"
    __table_args__ = (
        UniqueConstraint("day", "product_id", "warehouse_id", name="ux_stock_snapshot_day"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    day: Mapped[date] = mapped_column(Date, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id"), index=True)
    quantity: Mapped[Decimal] = mapped_column(Quantity)
    movement_id: Mapped[Optional[str]] = mapped_column(ForeignKey("movements.id"), nullable=True)
