from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ledger.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

RATE_CACHE_MAX_AGE_DAYS = int(os.getenv("RATE_CACHE_MAX_AGE_DAYS", "1"))
RATE_REFRESH_TIMEOUT_SECONDS = float(os.getenv("RATE_REFRESH_TIMEOUT_SECONDS", "30"))
RECOMPUTE_MAX_WORKERS = int(os.getenv("RECOMPUTE_MAX_WORKERS", "10"))


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD").strip().upper()
    if len(raw) != 3 or not raw.isalpha():
        return "USD"
    return raw


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()


def create_db_engine(url: str | None = None) -> Engine:
    database_url = url or DATABASE_URL
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)
