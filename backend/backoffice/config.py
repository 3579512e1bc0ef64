# backend/backoffice/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite file under backend/instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///backoffice.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Order pricing (all money in cents)
    WALK_IN_SHIPPING_FEE_CENTS = _env_int("WALK_IN_SHIPPING_FEE_CENTS", 1000)
    SALES_TAX_RATE_BPS = _env_int("SALES_TAX_RATE_BPS", 1000)  # 10%

    # Defaults for lazily created inventory records
    DEFAULT_REORDER_POINT = _env_int("DEFAULT_REORDER_POINT", 10)
    DEFAULT_REORDER_QUANTITY = _env_int("DEFAULT_REORDER_QUANTITY", 50)

    # Retries for lock timeouts / optimistic-lock conflicts
    RETRY_ATTEMPTS = _env_int("RETRY_ATTEMPTS", 3)
    RETRY_BACKOFF_SECONDS = float(os.environ.get("RETRY_BACKOFF_SECONDS", "0.1"))

    CORS_ALLOWED_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if origin.strip()
    }
