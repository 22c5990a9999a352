from __future__ import annotations

import os

import uvicorn

from lotledger.config import load_ledger_config
from lotledger.logging_setup import configure_logging


def main() -> None:
    config = load_ledger_config()
    configure_logging("lotledger", log_level=config.log_level)

    uvicorn.run(
        "lotledger.main:app",
        host=os.getenv("APP_HOST", "0.0.0.0"),
        port=int(os.getenv("APP_PORT", "10000")),
        reload=os.getenv("RELOAD", "0") == "1",
        log_level=config.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
