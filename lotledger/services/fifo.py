from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from lotledger.config import OrderingPolicy
from lotledger.models import Lot, LotWarehouseAllocation
from lotledger.repositories.lot_repository import LotRepository
from lotledger.utils import ZERO, q4


@dataclass
class FifoSlice:
    lot: Lot
    allocation: LotWarehouseAllocation
    quantity: Decimal

    @property
    def warehouse_id(self) -> int:
        return self.allocation.warehouse_id


class FifoAllocator:
    """
    Draws a quantity of a product from the oldest eligible lots.

    Eligible: not blocked, available > 0 and, when a warehouse is given,
    an allocation in that warehouse with available > 0. Candidates are
    read in batches, oldest first by origin date, creation time and id.
    """

    def __init__(self, db: Session, policy: OrderingPolicy, batch_size: int):
        self._db = db
        self._lots = LotRepository(db)
        self._policy = policy
        self._batch_size = batch_size

    def draw(
        self,
        product_id: int,
        quantity: Decimal,
        warehouse_id: Optional[int] = None,
        release_lot: bool = True,
    ) -> tuple[list[FifoSlice], Decimal]:
        """
        Decrement allocations (and the lots themselves when ``release_lot``)
        and return the slices taken with the quantity left uncovered.

        Transfers pass ``release_lot=False``: stock moves between
        allocations and the lot total is untouched.
        """
        remaining = q4(quantity)
        slices: list[FifoSlice] = []
        seen: set[str] = set()

        while remaining > 0:
            if warehouse_id is None:
                batch = self._global_batch(product_id, seen)
            else:
                batch = self._lots.fifo_candidates_in_warehouse(
                    product_id, warehouse_id, self._policy, self._batch_size, exclude_ids=seen
                )
            if not batch:
                break

            for lot, allocation in batch:
                seen.add(lot.id)
                if remaining <= 0:
                    break
                take = min(remaining, q4(allocation.available), q4(lot.available))
                if take <= 0:
                    continue
                allocation.available = q4(allocation.available) - take
                if release_lot:
                    lot.available = q4(lot.available) - take
                slices.append(FifoSlice(lot=lot, allocation=allocation, quantity=take))
                remaining -= take

        return slices, max(remaining, ZERO)

    def _global_batch(
        self, product_id: int, seen: set[str]
    ) -> list[tuple[Lot, LotWarehouseAllocation]]:
        pairs: list[tuple[Lot, LotWarehouseAllocation]] = []
        lots = self._lots.fifo_candidates(
            product_id, self._policy, self._batch_size, exclude_ids=seen
        )
        for lot in lots:
            allocations = self._lots.lock_allocations_for_lot(lot.id)
            if not allocations:
                seen.add(lot.id)
            for allocation in allocations:
                pairs.append((lot, allocation))
        return pairs
