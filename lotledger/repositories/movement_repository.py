from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from lotledger.models import Movement, MovementLine, MovementType
from lotledger.utils import q4


class MovementRepository:
    def __init__(self, db: Session):
        self._db = db

    def find_by_reference(
        self,
        reference_type: str,
        reference_id: str,
        movement_type: Optional[MovementType] = None,
    ) -> Optional[Movement]:
        stmt = select(Movement).where(
            Movement.reference_type == reference_type,
            Movement.reference_id == reference_id,
        )
        if movement_type is not None:
            stmt = stmt.where(Movement.type == movement_type.value)
        return self._db.scalar(stmt)

    def create(
        self,
        movement_type: MovementType,
        occurred_at: datetime,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        source_warehouse_id: Optional[int] = None,
        destination_warehouse_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Movement:
        movement = Movement(
            type=movement_type.value,
            occurred_at=occurred_at,
            reference_type=reference_type,
            reference_id=reference_id,
            source_warehouse_id=source_warehouse_id,
            destination_warehouse_id=destination_warehouse_id,
            note=note,
        )
        self._db.add(movement)
        self._db.flush()
        return movement

    def add_line(
        self,
        movement: Movement,
        product_id: int,
        quantity: Decimal,
        effect: int,
        lot_id: Optional[str] = None,
        warehouse_id: Optional[int] = None,
    ) -> MovementLine:
        line = MovementLine(
            movement_id=movement.id,
            position=len(movement.lines),
            product_id=product_id,
            lot_id=lot_id,
            warehouse_id=warehouse_id,
            quantity=quantity,
            effect=effect,
        )
        movement.lines.append(line)
        self._db.add(line)
        return line

    def lines_for(self, movement_id: str) -> list[MovementLine]:
        return list(
            self._db.scalars(
                select(MovementLine)
                .where(MovementLine.movement_id == movement_id)
                .order_by(MovementLine.position)
            )
        )

    def _kardex_filters(
        self,
        product_id: int,
        warehouse_id: Optional[int],
        date_from: Optional[datetime],
        date_to: Optional[datetime],
    ) -> list:
        filters = [MovementLine.product_id == product_id]
        if warehouse_id is not None:
            filters.append(MovementLine.warehouse_id == warehouse_id)
        if date_from is not None:
            filters.append(Movement.occurred_at >= date_from)
        if date_to is not None:
            filters.append(Movement.occurred_at < date_to)
        return filters

    def kardex_lines(
        self,
        product_id: int,
        warehouse_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
        descending: bool = True,
    ) -> list[tuple[Movement, MovementLine]]:
        """Signed line history of a product, joined with its movement header."""
        order = (Movement.occurred_at, MovementLine.movement_id, MovementLine.position)
        if descending:
            order = tuple(c.desc() for c in order)
        rows = self._db.execute(
            select(Movement, MovementLine)
            .join(MovementLine, MovementLine.movement_id == Movement.id)
            .where(*self._kardex_filters(product_id, warehouse_id, date_from, date_to))
            .order_by(*order)
            .limit(limit)
            .offset(offset)
        ).all()
        return [(movement, line) for movement, line in rows]

    def kardex_totals(
        self,
        product_id: int,
        warehouse_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> tuple[Decimal, Decimal, int]:
        """(inflow, outflow, line count) over the same filters as ``kardex_lines``."""
        inflow, outflow, count = self._db.execute(
            select(
                func.coalesce(func.sum(case((MovementLine.effect == 1, MovementLine.quantity), else_=0)), 0),
                func.coalesce(func.sum(case((MovementLine.effect == -1, MovementLine.quantity), else_=0)), 0),
                func.count(MovementLine.id),
            )
            .select_from(MovementLine)
            .join(Movement, Movement.id == MovementLine.movement_id)
            .where(*self._kardex_filters(product_id, warehouse_id, date_from, date_to))
        ).one()
        return q4(inflow), q4(outflow), int(count or 0)
