from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    status_code = 400
    code = "ledger_error"
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.context:
            out["context"] = {k: str(v) for k, v in self.context.items()}
        if self.retryable:
            out["retry"] = True
        return out


class ValidationError(LedgerError):
    status_code = 422
    code = "validation_error"


class InsufficientStockError(ValidationError):
    status_code = 409
    code = "insufficient_stock"


class NotFoundError(LedgerError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None):
        super().__init__(message or f"{entity} {entity_id} not found", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class ConcurrencyContention(LedgerError):
    status_code = 409
    code = "concurrency_contention"
    retryable = True


class IntegrationFailure(Exception):
    """Delivery to an external system failed; recorded on the outbox event, never surfaced to ledger callers."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
