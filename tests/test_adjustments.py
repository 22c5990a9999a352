from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from helpers import aggregate_quantity, allocation_available, lot_by_id, movement_count
from lotledger.errors import NotFoundError, ValidationError
from lotledger.models import Movement, MovementType, StockSnapshot
from lotledger.schemas import CountAdjustmentCreate, CountLineCreate
from lotledger.services.adjustment_service import AdjustmentService, opening_day
from lotledger.services.stock_service import StockService

JAN = datetime(2026, 1, 1, tzinfo=timezone.utc)
FEB = datetime(2026, 2, 1, tzinfo=timezone.utc)
COUNTED_AT = datetime(2026, 3, 10, 18, 30, tzinfo=timezone.utc)


def _count(*lines, reference=None) -> CountAdjustmentCreate:
    return CountAdjustmentCreate(
        lines=[
            CountLineCreate(product_id=p, warehouse_id=w, counted_quantity=Decimal(str(q)))
            for p, w, q in lines
        ],
        reference=reference,
        occurred_at=COUNTED_AT,
    )


def _snapshot(db, product_id: int, warehouse_id: int) -> StockSnapshot:
    db.expire_all()
    return db.scalar(
        select(StockSnapshot).where(
            StockSnapshot.product_id == product_id,
            StockSnapshot.warehouse_id == warehouse_id,
        )
    )


def test_opening_day_is_the_day_after_the_count():
    assert opening_day(COUNTED_AT) == date(2026, 3, 11)
    assert opening_day(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc)) == date(2027, 1, 1)


def test_short_count_takes_from_oldest_lot(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    old = receive(product, warehouse, 4, received_at=JAN).lot_ids[0]
    new = receive(product, warehouse, 4, received_at=FEB).lot_ids[0]

    result = AdjustmentService(db).adjust_by_count(_count((product.id, warehouse.id, 5)))

    assert [(l.lot_id, l.effect, l.quantity) for l in result.lines] == [(old, -1, Decimal("3"))]
    row = result.adjustments[0]
    assert (row.previous_quantity, row.counted_quantity, row.delta) == (
        Decimal("8"),
        Decimal("5"),
        Decimal("-3"),
    )
    assert lot_by_id(db, old).available == Decimal("1")
    assert lot_by_id(db, new).available == Decimal("4")
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("5")

    movement = db.get(Movement, result.movement_id)
    assert movement.type == MovementType.ADJUSTMENT.value
    assert movement.reference_type == "COUNT"

    snapshot = _snapshot(db, product.id, warehouse.id)
    assert result.opening_day == date(2026, 3, 11)
    assert snapshot.day == date(2026, 3, 11)
    assert snapshot.quantity == Decimal("5")
    assert snapshot.movement_id == result.movement_id
    assert StockService(db).find_aggregate_drift() == []


def test_surplus_goes_to_newest_lot(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    old = receive(product, warehouse, 4, received_at=JAN).lot_ids[0]
    new = receive(product, warehouse, 4, received_at=FEB).lot_ids[0]

    result = AdjustmentService(db).adjust_by_count(_count((product.id, warehouse.id, 10)))

    assert [(l.lot_id, l.effect, l.quantity) for l in result.lines] == [(new, 1, Decimal("2"))]
    assert lot_by_id(db, old).available == Decimal("4")
    assert lot_by_id(db, new).available == Decimal("6")
    assert allocation_available(db, new, warehouse.id) == Decimal("6")
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("10")
    assert StockService(db).find_aggregate_drift() == []


def test_matching_count_only_records_opening_stock(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    receive(product, warehouse, 8)

    result = AdjustmentService(db).adjust_by_count(_count((product.id, warehouse.id, 8)))

    assert result.lines == []
    assert result.adjustments[0].delta == Decimal("0")
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("8")
    assert _snapshot(db, product.id, warehouse.id).quantity == Decimal("8")
    rows = StockService(db).initial_stock_snapshot(date(2026, 3, 11))
    assert [(r.product_id, r.quantity, r.movement_id) for r in rows] == [
        (product.id, Decimal("8"), result.movement_id)
    ]


def test_recount_overwrites_the_opening_stock(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    receive(product, warehouse, 8)
    service = AdjustmentService(db)

    service.adjust_by_count(_count((product.id, warehouse.id, 6)))
    second = service.adjust_by_count(_count((product.id, warehouse.id, 7)))

    snapshot = _snapshot(db, product.id, warehouse.id)
    assert snapshot.quantity == Decimal("7")
    assert snapshot.movement_id == second.movement_id
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("7")


def test_surplus_without_a_lot_in_the_warehouse_is_rejected(db, make_product, make_warehouse, receive):
    product = make_product()
    w1 = make_warehouse()
    w2 = make_warehouse()
    receive(product, w1, 5)
    before = movement_count(db)

    with pytest.raises(ValidationError):
        AdjustmentService(db).adjust_by_count(_count((product.id, w2.id, 3)))

    assert movement_count(db) == before
    assert aggregate_quantity(db, product.id, w2.id) == Decimal("0")
    assert _snapshot(db, product.id, w2.id) is None


def test_count_lines_are_validated_up_front(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    receive(product, warehouse, 5)
    service = AdjustmentService(db)

    with pytest.raises(ValidationError):
        service.adjust_by_count(_count((product.id, warehouse.id, 1), (product.id, warehouse.id, 2)))
    with pytest.raises(NotFoundError):
        service.adjust_by_count(_count((999, warehouse.id, 1)))
    with pytest.raises(NotFoundError):
        service.adjust_by_count(_count((product.id, 999, 1)))
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("5")


def test_count_replay_is_idempotent(db, make_product, make_warehouse, receive):
    product = make_product()
    warehouse = make_warehouse()
    receive(product, warehouse, 8)
    service = AdjustmentService(db)

    first = service.adjust_by_count(_count((product.id, warehouse.id, 5), reference="INV-1"))
    again = service.adjust_by_count(_count((product.id, warehouse.id, 5), reference="INV-1"))

    assert again.idempotent is True
    assert again.movement_id == first.movement_id
    assert [(l.effect, l.quantity) for l in again.lines] == [(-1, Decimal("3"))]
    assert aggregate_quantity(db, product.id, warehouse.id) == Decimal("5")
