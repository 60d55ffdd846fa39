# backend/opsledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///opsledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Identifier allocator: attempts before AllocationExhausted
    IDENTIFIER_MAX_RETRIES = int(os.environ.get("IDENTIFIER_MAX_RETRIES", "10"))

    # Lots can only be archived once they are (nearly) used up
    ARCHIVE_MAX_AVAILABLE = float(os.environ.get("ARCHIVE_MAX_AVAILABLE", "5"))

    # Best-effort quantity_available refresh after each ledger post
    CACHE_RECOMPUTE_ATTEMPTS = int(os.environ.get("CACHE_RECOMPUTE_ATTEMPTS", "3"))

    # Effective dates may not lie further in the future than this
    FUTURE_DATE_TOLERANCE_DAYS = int(os.environ.get("FUTURE_DATE_TOLERANCE_DAYS", "0"))

    # Browser origins allowed to call the API (comma separated)
    CORS_ALLOWED_ORIGINS = [
        o.strip()
        for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if o.strip()
    ]
