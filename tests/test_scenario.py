from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from lotledger.models import Lot, PendingConsumption
from lotledger.schemas import (
    FractionationFactorCreate,
    FractionFactorLineCreate,
    SaleConsumptionCreate,
    TransferCreate,
    TransferLineCreate,
)
from lotledger.services.consumption_service import ConsumptionService
from lotledger.services.fractionation_service import FractionationService
from lotledger.services.stock_service import StockService
from lotledger.services.transfer_service import TransferService


def test_receipt_transfer_sale_shortfall_and_fractionation(db, make_product, make_warehouse, receive):
    p = make_product(name="Potatoes")
    w1 = make_warehouse("Main")
    w2 = make_warehouse("Branch")
    stock = StockService(db)

    receipt = receive(p, w1, 60, 40)
    assert len(receipt.lot_ids) == 2
    assert stock.get_stock(p.id, w1.id) == Decimal("100")

    TransferService(db).transfer(
        TransferCreate(
            lines=[
                TransferLineCreate(
                    product_id=p.id,
                    quantity=Decimal("30"),
                    source_warehouse_id=w1.id,
                    destination_warehouse_id=w2.id,
                )
            ]
        )
    )
    assert stock.get_stock(p.id, w1.id) == Decimal("70")
    assert stock.get_stock(p.id, w2.id) == Decimal("30")
    assert stock.get_stock(p.id) == Decimal("100")

    sales = ConsumptionService(db)
    first = sales.consume_for_sale(
        SaleConsumptionCreate(product_id=p.id, quantity=Decimal("50"), sale_reference="TICKET-1")
    )
    assert first.applied == Decimal("50")
    assert first.pending == Decimal("0")
    assert stock.get_stock(p.id) == Decimal("50")

    second = sales.consume_for_sale(
        SaleConsumptionCreate(product_id=p.id, quantity=Decimal("80"), sale_reference="TICKET-2")
    )
    assert second.applied == Decimal("50")
    assert second.pending == Decimal("30")
    [pending] = db.scalars(select(PendingConsumption)).all()
    assert pending.quantity == Decimal("30")
    assert stock.get_stock(p.id) == Decimal("0")

    bulk = make_product(name="Rice bulk")
    packaged = make_product(name="Rice 250g")
    bulk_lot = receive(bulk, w1, 20).lot_ids[0]

    FractionationService(db).fractionate_by_factor(
        FractionationFactorCreate(
            lines=[
                FractionFactorLineCreate(
                    lot_id=bulk_lot,
                    source_product_id=bulk.id,
                    warehouse_id=w1.id,
                    source_quantity=Decimal("10"),
                    destination_product_id=packaged.id,
                    factor=Decimal("4"),
                )
            ]
        )
    )
    assert stock.get_stock(packaged.id, w1.id) == Decimal("40")
    assert stock.get_stock(bulk.id, w1.id) == Decimal("10")
    assert stock.find_aggregate_drift() == []

    db.expire_all()
    for lot in db.scalars(select(Lot)):
        assert lot.available >= 0
