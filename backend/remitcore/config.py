# backend/remitcore/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/remitcore.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///remitcore.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Remittance lease: TTL of the lock row and how often the heartbeat renews it.
    # The interval must stay well below the TTL so several renewals happen before expiry.
    REMITTANCE_LOCK_TTL_SECONDS = int(os.environ.get("REMITTANCE_LOCK_TTL_SECONDS", "300"))
    REMITTANCE_HEARTBEAT_INTERVAL_SECONDS = float(
        os.environ.get("REMITTANCE_HEARTBEAT_INTERVAL_SECONDS", "60")
    )

    # Backend write-batch ceiling for chunked child/pending writes
    REMITTANCE_BATCH_SIZE = int(os.environ.get("REMITTANCE_BATCH_SIZE", "50"))
