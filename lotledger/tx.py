from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from lotledger.config import load_ledger_config
from lotledger.db import dialect_name
from lotledger.errors import ConcurrencyContention

# lock_not_available, deadlock_detected, serialization_failure
_CONTENTION_SQLSTATES = {"55P03", "40P01", "40001"}
_UNIQUE_VIOLATION = "23505"
# unique keys that double as idempotency keys
_REFERENCE_CONSTRAINTS = {"ux_movements_reference", "ix_receipts_supplier_reference"}
_REFERENCE_COLUMNS = ("movements.reference_type", "receipts.supplier_reference")


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_contention(exc: DBAPIError) -> bool:
    return _sqlstate(exc) in _CONTENTION_SQLSTATES


def is_reference_collision(exc: IntegrityError) -> bool:
    """True only for a unique violation on a movement reference or a supplier reference."""
    orig = getattr(exc, "orig", None)
    sqlstate = _sqlstate(exc)
    if sqlstate is not None:
        diag = getattr(orig, "diag", None)
        return sqlstate == _UNIQUE_VIOLATION and getattr(diag, "constraint_name", None) in _REFERENCE_CONSTRAINTS
    # sqlite reports no SQLSTATE, only "UNIQUE constraint failed: table.col, ..."
    message = str(orig)
    return message.startswith("UNIQUE constraint failed") and any(c in message for c in _REFERENCE_COLUMNS)


def _apply_lock_timeout(db: Session) -> None:
    if dialect_name(db) != "postgresql":
        return
    timeout_ms = int(load_ledger_config().ledger.lock_timeout_ms)
    db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))


@contextmanager
def ledger_transaction(db: Session, idempotency_key: Optional[str] = None) -> Iterator[Session]:
    """
    One ledger operation = one database transaction.

    Commits on success and rolls back on any exception. Lock timeouts,
    deadlocks and serialization failures become ConcurrencyContention.
    A unique violation on an idempotency key means a concurrent twin
    committed first: also ConcurrencyContention, the retry will replay it.
    """
    try:
        _apply_lock_timeout(db)
        yield db
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if idempotency_key is not None and is_reference_collision(e):
            raise ConcurrencyContention(
                "Concurrent operation with the same reference; retry", reference=idempotency_key
            ) from e
        raise
    except DBAPIError as e:
        db.rollback()
        if is_contention(e):
            raise ConcurrencyContention("Could not lock stock rows in time; retry") from e
        raise
    except Exception:
        db.rollback()
        raise
