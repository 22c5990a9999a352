from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from lotledger.errors import NotFoundError
from lotledger.logging_setup import get_logger
from lotledger.models import Lot
from lotledger.repositories.lot_repository import LotRepository
from lotledger.tx import ledger_transaction

logger = get_logger(__name__)


class LotService:
    def __init__(self, db: Session):
        self._db = db
        self._lots = LotRepository(db)

    def get_lot(self, lot_id: str) -> Lot:
        lot = self._lots.get(lot_id)
        if lot is None:
            raise NotFoundError("Lot", lot_id)
        return lot

    def set_blocked(self, lot_id: str, blocked: bool) -> Lot:
        """Blocked lots are skipped by FIFO selection and cannot be fractionated."""
        with ledger_transaction(self._db):
            lot = self._lots.lock_lot(lot_id)
            if lot is None:
                raise NotFoundError("Lot", lot_id)
            lot.blocked = blocked
        logger.info("lot_block_changed", lot_id=lot_id, blocked=blocked)
        return self.get_lot(lot_id)

    def list_lots(
        self,
        product_id: Optional[int] = None,
        warehouse_id: Optional[int] = None,
        only_available: bool = True,
        limit: int = 200,
    ) -> list[Lot]:
        return self._lots.list_lots(
            product_id=product_id,
            warehouse_id=warehouse_id,
            only_available=only_available,
            limit=limit,
        )
