from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from helpers import aggregate_quantity, allocation_available, lot_by_id, movement_count
from lotledger.errors import InsufficientStockError, NotFoundError, ValidationError
from lotledger.models import Movement, MovementType
from lotledger.schemas import ShrinkageCreate, ShrinkageLineCreate
from lotledger.services.shrinkage_service import ShrinkageService


def test_shrinkage_from_named_lot(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    lot_ids = receive(product, warehouse, 6, 4).lot_ids

    result = ShrinkageService(db).register_shrinkage(
        ShrinkageCreate(
            lines=[
                ShrinkageLineCreate(
                    product_id=product.id,
                    warehouse_id=warehouse.id,
                    quantity=Decimal("1.5"),
                    lot_id=lot_ids[1],
                )
            ],
            note="crate dropped",
        )
    )

    assert lot_by_id(db, lot_ids[1]).available == Decimal("2.5")
    assert allocation_available(db, lot_ids[1], warehouse.id) == Decimal("2.5")
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("8.5")
    movement = db.get(Movement, result.movement_id)
    assert movement.type == MovementType.SHRINKAGE.value
    assert movement.note == "crate dropped"
    assert [(l.lot_id, l.effect) for l in result.lines] == [(lot_ids[1], -1)]


def test_shrinkage_without_lot_uses_fifo(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    old = receive(product, warehouse, 2, received_at=datetime(2026, 1, 1, tzinfo=timezone.utc)).lot_ids[0]
    receive(product, warehouse, 5, received_at=datetime(2026, 1, 9, tzinfo=timezone.utc))

    result = ShrinkageService(db).register_shrinkage(
        ShrinkageCreate(
            lines=[ShrinkageLineCreate(product_id=product.id, warehouse_id=warehouse.id, quantity=Decimal("3"))]
        )
    )

    assert result.lines[0].lot_id == old
    assert result.lines[0].quantity == Decimal("2")
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("4")


def test_shrinkage_beyond_supply_fails_whole_batch(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    receive(product, warehouse, 3)
    before = movement_count(db)

    with pytest.raises(InsufficientStockError):
        ShrinkageService(db).register_shrinkage(
            ShrinkageCreate(
                lines=[
                    ShrinkageLineCreate(product_id=product.id, warehouse_id=warehouse.id, quantity=Decimal("2")),
                    ShrinkageLineCreate(product_id=product.id, warehouse_id=warehouse.id, quantity=Decimal("2")),
                ]
            )
        )

    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("3")
    assert movement_count(db) == before


def test_shrinkage_lot_checks(db, make_product, make_warehouse, receive):
    product = make_product()
    other = make_product()
    warehouse = make_warehouse()
    lot_id = receive(product, warehouse, 3).lot_ids[0]
    service = ShrinkageService(db)

    with pytest.raises(ValidationError):
        service.register_shrinkage(
            ShrinkageCreate(
                lines=[
                    ShrinkageLineCreate(
                        product_id=other.id, warehouse_id=warehouse.id, quantity=Decimal("1"), lot_id=lot_id
                    )
                ]
            )
        )
    with pytest.raises(NotFoundError):
        service.register_shrinkage(
            ShrinkageCreate(
                lines=[
                    ShrinkageLineCreate(
                        product_id=product.id, warehouse_id=warehouse.id, quantity=Decimal("1"), lot_id="gone"
                    )
                ]
            )
        )


def test_shrinkage_reference_is_idempotent(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    receive(product, warehouse, 10)
    payload = ShrinkageCreate(
        reference="M-5",
        lines=[ShrinkageLineCreate(product_id=product.id, warehouse_id=warehouse.id, quantity=Decimal("1"))],
    )
    service = ShrinkageService(db)

    service.register_shrinkage(payload)
    again = service.register_shrinkage(payload)

    assert again.idempotent
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("9")
