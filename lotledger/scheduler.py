from __future__ import annotations

from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from lotledger.config import LedgerConfig, load_ledger_config
from lotledger.db import get_session
from lotledger.logging_setup import get_logger
from lotledger.services.outbox_dispatcher import OutboxDispatcher

logger = get_logger(__name__)

_scheduler: Optional[BackgroundScheduler] = None


def _job_dispatch_outbox(dispatcher: OutboxDispatcher) -> None:
    try:
        dispatcher.run_once()
    except Exception:
        # the next tick retries; a failing cycle must not kill the job
        logger.exception("outbox_cycle_crashed")


def init_scheduler(
    config: Optional[LedgerConfig] = None,
    dispatcher: Optional[OutboxDispatcher] = None,
) -> Optional[BackgroundScheduler]:
    global _scheduler
    config = config or load_ledger_config()
    if not config.outbox.enabled or _scheduler is not None:
        return _scheduler

    dispatcher = dispatcher or OutboxDispatcher(get_session, config=config)
    _scheduler = BackgroundScheduler(timezone="UTC")
    _scheduler.add_job(
        _job_dispatch_outbox,
        "interval",
        seconds=config.outbox.interval_seconds,
        args=[dispatcher],
        id="outbox_dispatch",
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info("outbox_scheduler_started", interval_seconds=config.outbox.interval_seconds)
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
