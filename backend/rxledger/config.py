# backend/rxledger/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/rxledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///rxledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("RXLEDGER_LOG_LEVEL", "INFO")

    # Alert generation
    ALERT_DEDUP_WINDOW_HOURS = int(os.environ.get("RXLEDGER_ALERT_DEDUP_HOURS", "24"))
    EXPIRY_CRITICAL_DAYS = int(os.environ.get("RXLEDGER_EXPIRY_CRITICAL_DAYS", "30"))
    EXPIRY_WARNING_DAYS = int(os.environ.get("RXLEDGER_EXPIRY_WARNING_DAYS", "90"))
    LOW_STOCK_HIGH_RATIO = float(os.environ.get("RXLEDGER_LOW_STOCK_HIGH_RATIO", "0.3"))

    # Unit-cost sanity bounds enforced at receiving time (cents)
    MAX_UNIT_COST_CENTS = int(os.environ.get("RXLEDGER_MAX_UNIT_COST_CENTS", "10000000"))
    MAX_BATCH_VALUE_CENTS = int(os.environ.get("RXLEDGER_MAX_BATCH_VALUE_CENTS", "100000000"))

    # Compare-and-set retries when restoring batch quantities
    COMPENSATION_ATTEMPTS = int(os.environ.get("RXLEDGER_COMPENSATION_ATTEMPTS", "3"))

    RUN_DATA_MIGRATIONS = _env_bool("RXLEDGER_RUN_DATA_MIGRATIONS", False)
