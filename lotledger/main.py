from __future__ import annotations

import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

if __name__ == "__main__" and __package__ is None:
    sys.path.append(str(Path(__file__).resolve().parents[1]))

from lotledger.config import load_ledger_config
from lotledger.db import Base, engine
from lotledger.errors import LedgerError
from lotledger.logging_setup import configure_logging, get_logger
from lotledger.routers.adjustments import router as adjustments_router
from lotledger.routers.fractionations import router as fractionations_router
from lotledger.routers.health import router as health_router
from lotledger.routers.lots import router as lots_router
from lotledger.routers.outbox import router as outbox_router
from lotledger.routers.products import router as products_router
from lotledger.routers.receipts import router as receipts_router
from lotledger.routers.sales import router as sales_router
from lotledger.routers.shrinkage import router as shrinkage_router
from lotledger.routers.stock import router as stock_router
from lotledger.routers.transfers import router as transfers_router
from lotledger.scheduler import init_scheduler, shutdown_scheduler

logger = get_logger(__name__)


def _run_startup_tasks() -> None:
    """Create missing tables and start the outbox job when enabled."""
    config = load_ledger_config()
    configure_logging("lotledger", log_level=config.log_level)
    Base.metadata.create_all(bind=engine)
    init_scheduler(config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    _run_startup_tasks()
    yield
    shutdown_scheduler()


app = FastAPI(title="Lot Ledger", lifespan=lifespan)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500 or exc.retryable:
        logger.warning("ledger_request_failed", path=request.url.path, code=exc.code, detail=exc.message)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


app.include_router(health_router)
app.include_router(products_router)
app.include_router(receipts_router)
app.include_router(sales_router)
app.include_router(transfers_router)
app.include_router(fractionations_router)
app.include_router(shrinkage_router)
app.include_router(adjustments_router)
app.include_router(stock_router)
app.include_router(lots_router)
app.include_router(outbox_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "lotledger.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "1") == "1",
    )
