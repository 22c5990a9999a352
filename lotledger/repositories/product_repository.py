from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lotledger.models import Product, Warehouse


class ProductRepository:
    def __init__(self, db: Session):
        self._db = db

    def get(self, product_id: int) -> Optional[Product]:
        return self._db.get(Product, product_id)

    def list(self) -> list[Product]:
        return list(self._db.scalars(select(Product).order_by(Product.id)))

    def add(self, product: Product) -> None:
        self._db.add(product)

    def get_warehouse(self, warehouse_id: int) -> Optional[Warehouse]:
        return self._db.get(Warehouse, warehouse_id)
