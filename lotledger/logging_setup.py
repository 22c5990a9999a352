"""
Structured JSON logging.

Usage:
    from lotledger.logging_setup import configure_logging, get_logger

    configure_logging("lotledger", log_level="INFO")   # once, at startup
    logger = get_logger(__name__)
    logger.info("sale_consumed", product_id=7, applied="12.0000")
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional, cast

import structlog
from structlog.types import EventDict, Processor

_configured = False


def configure_logging(service_name: str, log_level: str = "INFO") -> None:
    """
    Configure structlog + stdlib logging for the process.

    Idempotent: later calls are no-ops. Every entry carries the service
    name, an ISO timestamp and the log level, rendered as JSON on stdout.
    """
    global _configured
    if _configured:
        return

    level = getattr(logging, log_level.upper(), logging.INFO)

    def add_service_name(_logger: Any, _method_name: str, event_dict: EventDict) -> EventDict:
        event_dict["service"] = service_name
        return event_dict

    processors: list[Processor] = [
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_service_name,
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.dict_tracebacks,
        structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    for h in root.handlers[:]:
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        log = logging.getLogger(name)
        log.handlers = [handler]
        log.propagate = False

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if level == logging.DEBUG else logging.WARNING
    )
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
