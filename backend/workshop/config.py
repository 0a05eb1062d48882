# backend/workshop/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the backend by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///workshop.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Billing: tax rate in basis points (1800 = 18%)
    DEFAULT_TAX_RATE_BPS = _int_env("DEFAULT_TAX_RATE_BPS", 1800)

    # Delivery gate: largest balance (in paise) still treated as settled
    DELIVERY_BALANCE_TOLERANCE_CENTS = _int_env("DELIVERY_BALANCE_TOLERANCE_CENTS", 1)

    # Hosted checkout (Razorpay-compatible orders API)
    GATEWAY_KEY_ID = os.environ.get("GATEWAY_KEY_ID", "")
    GATEWAY_KEY_SECRET = os.environ.get("GATEWAY_KEY_SECRET", "")
    GATEWAY_BASE_URL = os.environ.get("GATEWAY_BASE_URL", "https://api.razorpay.com/v1")
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))
    CHECKOUT_TOKEN_TTL_MINUTES = _int_env("CHECKOUT_TOKEN_TTL_MINUTES", 30)

    # Notifications: send right after each commit, or leave rows pending for
    # `flask outbox dispatch` (run from cron or a worker) when false
    NOTIFICATION_DISPATCH_INLINE = _bool_env("NOTIFICATION_DISPATCH_INLINE", True)

    # Browser origins allowed by the CORS hook
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if o.strip()
    )
