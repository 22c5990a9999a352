from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lotledger.deps import session_dep
from lotledger.schemas import (
    QuickReceiptCreate,
    ReceiptCreate,
    ReceiptNoteUpdate,
    ReceiptRead,
    ReceiptResult,
)
from lotledger.services.receipt_service import ReceiptService

router = APIRouter(tags=["receipts"])


def receipt_service_dep(db: Session = Depends(session_dep)) -> ReceiptService:
    return ReceiptService(db)


@router.post("/receipts", response_model=ReceiptResult)
def register_receipt(
    payload: ReceiptCreate,
    service: ReceiptService = Depends(receipt_service_dep),
) -> ReceiptResult:
    return service.register_receipt(payload)


@router.post("/receipts/quick", response_model=ReceiptResult)
def register_quick_receipt(
    payload: QuickReceiptCreate,
    service: ReceiptService = Depends(receipt_service_dep),
) -> ReceiptResult:
    return service.register_quick_receipt(payload)


@router.get("/receipts/{receipt_id}", response_model=ReceiptRead)
def get_receipt(
    receipt_id: str,
    service: ReceiptService = Depends(receipt_service_dep),
) -> ReceiptRead:
    return ReceiptRead.model_validate(service.get_receipt(receipt_id))


@router.patch("/receipts/{receipt_id}/note", response_model=ReceiptRead)
def update_receipt_note(
    receipt_id: str,
    payload: ReceiptNoteUpdate,
    service: ReceiptService = Depends(receipt_service_dep),
) -> ReceiptRead:
    return ReceiptRead.model_validate(service.update_note(receipt_id, payload.note))
