# backend/storefront/config.py
from __future__ import annotations
import os


def _csv(value: str) -> set[str]:
    return {item.strip() for item in value.split(",") if item.strip()}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storefront.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Stock at or below this level raises a low-stock alert when a product
    # has no reorder_point of its own.
    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "5"))

    # Lock timeout / deadlock retries for order and payment transactions
    ORDER_RETRY_ATTEMPTS = int(os.environ.get("ORDER_RETRY_ATTEMPTS", "3"))
    ORDER_RETRY_BACKOFF = float(os.environ.get("ORDER_RETRY_BACKOFF", "0.1"))

    # Unpaid orders older than this are eligible for `flask orders expire-pending`
    PENDING_ORDER_TTL_MINUTES = int(os.environ.get("PENDING_ORDER_TTL_MINUTES", "1440"))

    # Shared secret for gateway webhook signatures (HMAC-SHA256). Unset = unsigned.
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET")

    # Real-time channel
    NOTIFICATION_QUEUE_SIZE = int(os.environ.get("NOTIFICATION_QUEUE_SIZE", "100"))
    NOTIFICATION_HEARTBEAT_SECONDS = float(os.environ.get("NOTIFICATION_HEARTBEAT_SECONDS", "15"))

    CORS_ALLOWED_ORIGINS = _csv(os.environ.get(
        "CORS_ALLOWED_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000",
    ))
