# backend/branchpos/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB holding the tenant and operator documents
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///branchpos.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    # Listed prices are VAT-inclusive (16% Kenyan VAT)
    VAT_RATE = os.environ.get("VAT_RATE", "0.16")
    DEFAULT_LOAN_TERM_DAYS = _env_int("DEFAULT_LOAN_TERM_DAYS", 30)

    # "live" (change notifications with polling fallback) or "polling"
    SYNC_TRANSPORT = os.environ.get("SYNC_TRANSPORT", "live").strip().lower()
    # Clamped to [5, 30] seconds by the sync layer
    SYNC_POLL_INTERVAL_SECONDS = _env_int("SYNC_POLL_INTERVAL_SECONDS", 5)
