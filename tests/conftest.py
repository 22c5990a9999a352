from __future__ import annotations

import itertools
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterator, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from lotledger.config import LedgerConfig, reset_config_cache
from lotledger.db import Base
from lotledger.models import Product, Warehouse, new_id
from lotledger.schemas import ReceiptCreate, ReceiptLineCreate, ReceiptResult
from lotledger.services.receipt_service import ReceiptService

_LEDGER_ENV = (
    "LEDGER_SHORTFALL_POLICY",
    "LEDGER_ORDERING_POLICY",
    "LEDGER_LOCK_TIMEOUT_MS",
    "LEDGER_FIFO_BATCH_SIZE",
    "OUTBOX_ENABLED",
    "OUTBOX_INTERVAL_SECONDS",
    "OUTBOX_BATCH_SIZE",
    "OUTBOX_BACKOFF_MINUTES",
    "OUTBOX_MAX_RETRY_MINUTES",
    "OUTBOX_MAX_ATTEMPTS",
    "SALES_API_BASE",
    "SALES_API_KEY",
    "SALES_API_TIMEOUT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    """Every test starts from built-in defaults: no config file, no overrides."""
    for name in _LEDGER_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LEDGER_CONFIG_PATH", str(tmp_path / "missing.conf"))
    reset_config_cache()
    yield
    reset_config_cache()


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ledger_config() -> LedgerConfig:
    return LedgerConfig()


@pytest.fixture
def make_product(db: Session) -> Callable[..., Product]:
    counter = itertools.count(1)

    def _make(name: Optional[str] = None, code: Optional[str] = None, **fields) -> Product:
        n = next(counter)
        product = Product(code=code or f"P{n:04d}", name=name or f"Product {n}", **fields)
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def make_warehouse(db: Session) -> Callable[..., Warehouse]:
    counter = itertools.count(1)

    def _make(name: Optional[str] = None) -> Warehouse:
        n = next(counter)
        warehouse = Warehouse(code=f"W{n}", name=name or f"Warehouse {n}")
        db.add(warehouse)
        db.commit()
        return warehouse

    return _make


@pytest.fixture
def receive(db: Session) -> Callable[..., ReceiptResult]:
    """Register a one-line receipt of ``type1`` + ``type2`` units."""

    def _receive(
        product: Product,
        warehouse: Warehouse,
        type1,
        type2=0,
        received_at: Optional[datetime] = None,
        reference: Optional[str] = None,
    ) -> ReceiptResult:
        type1 = Decimal(str(type1))
        type2 = Decimal(str(type2))
        payload = ReceiptCreate(
            supplier_reference=reference or f"REM-{new_id()[:8]}",
            warehouse_id=warehouse.id,
            received_at=received_at,
            lines=[
                ReceiptLineCreate(
                    product_id=product.id,
                    total_quantity=type1 + type2,
                    quantity_type1=type1,
                    quantity_type2=type2,
                )
            ],
        )
        return ReceiptService(db).register_receipt(payload)

    return _receive
