# backend/stockledger/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite file in the instance folder unless DATABASE_URL points elsewhere
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Low-stock alerting: stock_low fires when a row drops below the threshold,
    # priority is "high" at or below LOW_STOCK_HIGH_PRIORITY_AT.
    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "5"))
    LOW_STOCK_HIGH_PRIORITY_AT = int(os.environ.get("LOW_STOCK_HIGH_PRIORITY_AT", "2"))
    NOTIFY_RESTOCKED = _env_bool("NOTIFY_RESTOCKED", True)

    # 500,000 currency units, stored in cents
    IMPORTANT_SALE_THRESHOLD_CENTS = int(os.environ.get("IMPORTANT_SALE_THRESHOLD_CENTS", "50000000"))

    # Pending orders this many days past their expected arrival are "delayed"
    ORDER_DELAY_DAYS = int(os.environ.get("ORDER_DELAY_DAYS", "3"))

    # Bounded wait for per-row ledger locks before a batch gives up with LockTimeout
    LEDGER_LOCK_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", "2.0"))
    LEDGER_COMMIT_ATTEMPTS = int(os.environ.get("LEDGER_COMMIT_ATTEMPTS", "3"))
