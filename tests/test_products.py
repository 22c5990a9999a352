from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from lotledger.errors import NotFoundError, ValidationError
from lotledger.models import OutboxEvent, OutboxStatus
from lotledger.schemas import ProductCreate, ProductUpdate
from lotledger.services.outbox_service import PRODUCT_UPSERT
from lotledger.services.product_service import ProductService


def _events(db) -> list[OutboxEvent]:
    db.expire_all()
    return list(db.scalars(select(OutboxEvent).order_by(OutboxEvent.created_at)))


def test_create_enqueues_product_upsert(db):
    product = ProductService(db).create(
        ProductCreate(code=" FRU-001 ", name="Apple", unit="kg", base_price=Decimal("3.5"))
    )

    assert product.code == "FRU-001"
    [event] = _events(db)
    assert event.event_type == PRODUCT_UPSERT
    assert event.aggregate_type == "Product"
    assert event.aggregate_id == str(product.id)
    assert event.status == OutboxStatus.PENDING.value
    assert event.payload["codigo_comercial"] == "FRU-001"
    assert event.payload["precio_base"] == 3.5


def test_update_enqueues_only_on_sales_relevant_change(db):
    service = ProductService(db)
    product = service.create(ProductCreate(code="VER-001", name="Lettuce", base_price=Decimal("1")))

    service.update(product.id, ProductUpdate(name="Lettuce", base_price=Decimal("1")))
    assert len(_events(db)) == 1

    service.update(product.id, ProductUpdate(name="Lettuce", base_price=Decimal("1.2")))
    events = _events(db)
    assert len(events) == 2
    assert events[-1].payload["precio_base"] == 1.2


def test_duplicate_code_is_rejected(db):
    service = ProductService(db)
    service.create(ProductCreate(code="CON-001", name="Beans"))

    with pytest.raises(ValidationError):
        service.create(ProductCreate(code="CON-001", name="Other beans"))
    assert len(_events(db)) == 1


def test_product_validation(db):
    service = ProductService(db)

    with pytest.raises(ValidationError):
        service.create(ProductCreate(code="X", name="  "))
    with pytest.raises(ValidationError):
        service.create(ProductCreate(code="X", name="Thing", base_price=Decimal("-1")))
    with pytest.raises(NotFoundError):
        service.update(999, ProductUpdate(name="Ghost"))
