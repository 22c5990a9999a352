from __future__ import annotations

import configparser
import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class ShortfallPolicy(str, Enum):
    PENDING = "pending"
    REJECT = "reject"


class OrderingPolicy(str, Enum):
    # Concurrent consumers skip rows locked by others; FIFO holds per operation only.
    FIFO_SKIP_LOCKED = "fifo_skip_locked"
    # Waits for locked rows; global oldest-first at the cost of throughput.
    FIFO_STRICT = "fifo_strict"


class LedgerSection(BaseModel):
    shortfall_policy: ShortfallPolicy = ShortfallPolicy.PENDING
    ordering_policy: OrderingPolicy = OrderingPolicy.FIFO_SKIP_LOCKED
    lock_timeout_ms: int = 5000
    fifo_batch_size: int = 25

    @field_validator("fifo_batch_size")
    @classmethod
    def batch_size_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("fifo_batch_size must be greater than 0")
        return v


class OutboxSection(BaseModel):
    enabled: bool = False
    interval_seconds: int = 15
    batch_size: int = 30
    backoff_minutes: List[int] = Field(default_factory=lambda: [1, 2, 5, 10, 30, 60])
    max_retry_minutes: int = 60
    max_attempts: Optional[int] = None

    @field_validator("backoff_minutes")
    @classmethod
    def schedule_must_not_be_empty(cls, v: List[int]) -> List[int]:
        if not v or any(m <= 0 for m in v):
            raise ValueError("backoff_minutes must be a non-empty list of positive minutes")
        return v


class SalesApiSection(BaseModel):
    base_url: str = ""
    api_key: str = ""
    timeout: float = 10.0


class LedgerConfig(BaseModel):
    ledger: LedgerSection = Field(default_factory=LedgerSection)
    outbox: OutboxSection = Field(default_factory=OutboxSection)
    sales_api: SalesApiSection = Field(default_factory=SalesApiSection)
    log_level: str = "INFO"


_cached_configs: Dict[str, Tuple[LedgerConfig, float, Tuple[str, ...]]] = {}

# (section, key) -> environment variable that overrides the file value
_ENV_OVERRIDES: Dict[Tuple[str, str], str] = {
    ("ledger", "shortfall_policy"): "LEDGER_SHORTFALL_POLICY",
    ("ledger", "ordering_policy"): "LEDGER_ORDERING_POLICY",
    ("ledger", "lock_timeout_ms"): "LEDGER_LOCK_TIMEOUT_MS",
    ("ledger", "fifo_batch_size"): "LEDGER_FIFO_BATCH_SIZE",
    ("outbox", "enabled"): "OUTBOX_ENABLED",
    ("outbox", "interval_seconds"): "OUTBOX_INTERVAL_SECONDS",
    ("outbox", "batch_size"): "OUTBOX_BATCH_SIZE",
    ("outbox", "backoff_minutes"): "OUTBOX_BACKOFF_MINUTES",
    ("outbox", "max_retry_minutes"): "OUTBOX_MAX_RETRY_MINUTES",
    ("outbox", "max_attempts"): "OUTBOX_MAX_ATTEMPTS",
    ("sales_api", "base_url"): "SALES_API_BASE",
    ("sales_api", "api_key"): "SALES_API_KEY",
    ("sales_api", "timeout"): "SALES_API_TIMEOUT",
}


def _env_values() -> Tuple[str, ...]:
    names = list(_ENV_OVERRIDES.values()) + ["LOG_LEVEL"]
    return tuple((os.getenv(name) or "").strip() for name in names)


def _read_file(path: Path) -> Dict[str, Dict[str, str]]:
    if not path.exists():
        return {}
    parser = configparser.ConfigParser()
    parser.read(path, encoding="utf-8")
    return {section: dict(parser.items(section)) for section in parser.sections()}


def _split_list(raw: str) -> List[int]:
    return [int(p.strip()) for p in raw.split(",") if p.strip()]


def load_ledger_config() -> LedgerConfig:
    """Read the INI file and apply environment overrides. Cached until the file or an override changes."""
    path = Path(os.getenv("LEDGER_CONFIG_PATH", "lotledger.conf"))
    path_str = str(path)
    try:
        mtime = float(path.stat().st_mtime)
    except OSError:
        mtime = 0.0

    env = _env_values()
    cached = _cached_configs.get(path_str)
    if cached is not None and cached[1] == mtime and cached[2] == env:
        return cached[0]

    raw = _read_file(path)
    for ((section, key), _), value in zip(_ENV_OVERRIDES.items(), env):
        if value:
            raw.setdefault(section, {})[key] = value

    outbox_raw: Dict[str, object] = dict(raw.get("outbox", {}))
    if isinstance(outbox_raw.get("backoff_minutes"), str):
        outbox_raw["backoff_minutes"] = _split_list(str(outbox_raw["backoff_minutes"]))
    if outbox_raw.get("enabled") is not None:
        outbox_raw["enabled"] = str(outbox_raw["enabled"]).lower() in ("1", "true", "yes", "on")

    cfg = LedgerConfig(
        ledger=LedgerSection.model_validate(raw.get("ledger", {})),
        outbox=OutboxSection.model_validate(outbox_raw),
        sales_api=SalesApiSection.model_validate(raw.get("sales_api", {})),
        log_level=(env[-1] or raw.get("logging", {}).get("level") or "INFO").upper(),
    )
    _cached_configs[path_str] = (cfg, mtime, env)
    return cfg


def reset_config_cache() -> None:
    _cached_configs.clear()
