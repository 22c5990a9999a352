from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lotledger.errors import NotFoundError, ValidationError
from lotledger.models import Product
from lotledger.repositories.product_repository import ProductRepository
from lotledger.schemas import ProductCreate, ProductUpdate
from lotledger.services.outbox_service import PRODUCT_UPSERT, OutboxService


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


def sales_payload(product: Product) -> dict[str, Any]:
    """Fields the sales system mirrors, in its own vocabulary."""
    return {
        "id_interno": str(product.id),
        "codigo_comercial": product.code,
        "nombre": product.name,
        "unidad": product.unit,
        "precio_base": float(product.base_price or 0),
        "descripcion": product.description,
        "activo": bool(product.active),
    }


class ProductService:
    def __init__(self, db: Session):
        self._db = db
        self._products = ProductRepository(db)
        self._outbox = OutboxService(db)

    def _validate(self, name: str, base_price) -> None:
        if not name.strip():
            raise ValidationError("name must not be empty")
        if base_price is not None and base_price < 0:
            raise ValidationError("base_price must be >= 0")

    def _enqueue_upsert(self, product: Product) -> None:
        self._outbox.enqueue(
            aggregate_type="Product",
            aggregate_id=str(product.id),
            event_type=PRODUCT_UPSERT,
            payload=sales_payload(product),
        )

    def _commit(self) -> None:
        try:
            self._db.commit()
        except IntegrityError as e:
            self._db.rollback()
            raise ValidationError("Product code already exists") from e

    def get(self, product_id: int) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    def create(self, payload: ProductCreate) -> Product:
        self._validate(payload.name, payload.base_price)
        code = payload.code.strip()
        if not code:
            raise ValidationError("code must not be empty")

        product = Product(
            code=code,
            name=payload.name.strip(),
            unit=_clean(payload.unit),
            base_price=payload.base_price,
            description=_clean(payload.description),
            active=payload.active,
        )
        self._products.add(product)
        try:
            self._db.flush()
        except IntegrityError as e:
            self._db.rollback()
            raise ValidationError("Product code already exists") from e
        self._enqueue_upsert(product)
        self._commit()
        self._db.refresh(product)
        return product

    def update(self, product_id: int, payload: ProductUpdate) -> Product:
        product = self.get(product_id)
        self._validate(payload.name, payload.base_price)

        before = sales_payload(product)
        new_code = payload.code.strip() if payload.code else ""
        if new_code:
            product.code = new_code
        product.name = payload.name.strip()
        product.unit = _clean(payload.unit)
        product.base_price = payload.base_price
        product.description = _clean(payload.description)
        product.active = payload.active

        if sales_payload(product) != before:
            self._enqueue_upsert(product)
        self._commit()
        self._db.refresh(product)
        return product

    def list(self) -> list[Product]:
        return self._products.list()
