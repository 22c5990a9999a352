from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from typing import Optional

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from lotledger.errors import ConcurrencyContention
from lotledger.models import Movement, MovementType, StockAggregate, Warehouse
from lotledger.tx import is_contention, is_reference_collision, ledger_transaction
from lotledger.utils import utcnow


class _PgError(Exception):
    def __init__(self, sqlstate: str, constraint_name: Optional[str] = None):
        super().__init__(sqlstate)
        self.sqlstate = sqlstate
        self.diag = SimpleNamespace(constraint_name=constraint_name)


def _operational(sqlstate: str) -> OperationalError:
    return OperationalError("SELECT 1", {}, _PgError(sqlstate))


def _movement(reference_id: str) -> Movement:
    return Movement(
        type=MovementType.SALE.value,
        occurred_at=utcnow(),
        reference_type="SALE",
        reference_id=reference_id,
    )


def test_commits_on_success(db, session_factory):
    with ledger_transaction(db):
        db.add(Warehouse(code="W1", name="Main"))

    other = session_factory()
    try:
        assert other.query(Warehouse).count() == 1
    finally:
        other.close()


def test_rolls_back_on_error(db):
    with pytest.raises(RuntimeError):
        with ledger_transaction(db):
            db.add(Warehouse(code="W1", name="Main"))
            db.flush()
            raise RuntimeError("boom")

    assert db.query(Warehouse).count() == 0


@pytest.mark.parametrize("sqlstate", ["55P03", "40P01", "40001"])
def test_lock_failures_become_contention(db, sqlstate):
    assert is_contention(_operational(sqlstate))

    with pytest.raises(ConcurrencyContention) as exc:
        with ledger_transaction(db):
            raise _operational(sqlstate)
    assert exc.value.retryable is True


def test_other_database_errors_propagate(db):
    with pytest.raises(OperationalError):
        with ledger_transaction(db):
            raise _operational("08006")


def test_reference_collision_on_postgres_is_contention(db):
    collision = IntegrityError("INSERT", {}, _PgError("23505", "ux_movements_reference"))
    other_unique = IntegrityError("INSERT", {}, _PgError("23505", "products_code_key"))

    assert is_reference_collision(collision)
    assert not is_reference_collision(other_unique)
    with pytest.raises(ConcurrencyContention):
        with ledger_transaction(db, idempotency_key="V-1"):
            raise collision
    with pytest.raises(IntegrityError):
        with ledger_transaction(db, idempotency_key="V-1"):
            raise other_unique


def test_duplicate_reference_on_sqlite_is_contention(db):
    with ledger_transaction(db):
        db.add(_movement("V-1"))

    with pytest.raises(ConcurrencyContention):
        with ledger_transaction(db, idempotency_key="V-1"):
            db.add(_movement("V-1"))

    with pytest.raises(IntegrityError):
        with ledger_transaction(db):
            db.add(_movement("V-1"))


def test_check_violation_under_a_reference_is_not_contention(db, make_product, make_warehouse):
    product = make_product()
    warehouse = make_warehouse()

    with pytest.raises(IntegrityError):
        with ledger_transaction(db, idempotency_key="V-2"):
            db.add(StockAggregate(product_id=product.id, warehouse_id=warehouse.id, quantity=Decimal("-1")))
