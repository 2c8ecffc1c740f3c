# backend/pharmapos/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///pharmapos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Card terminals need a minimum dwell before the cashier may confirm
    CARD_SETTLE_SECONDS = int(os.environ.get("CARD_SETTLE_SECONDS", "10"))

    # Pending prescriptions older than this are not offered at the till
    PRESCRIPTION_LOOKBACK_DAYS = int(os.environ.get("PRESCRIPTION_LOOKBACK_DAYS", "60"))

    # Bounded retry when a remembered session is not yet visible
    SESSION_LOOKUP_ATTEMPTS = int(os.environ.get("SESSION_LOOKUP_ATTEMPTS", "3"))
    SESSION_LOOKUP_BACKOFF = float(os.environ.get("SESSION_LOOKUP_BACKOFF", "0.2"))

    # QR payment provider (Mercado Pago checkout preferences API)
    QR_GATEWAY_BASE_URL = os.environ.get("QR_GATEWAY_BASE_URL", "https://api.mercadopago.com")
    QR_GATEWAY_ACCESS_TOKEN = os.environ.get("QR_GATEWAY_ACCESS_TOKEN")
    QR_GATEWAY_TIMEOUT = float(os.environ.get("QR_GATEWAY_TIMEOUT", "10"))
    QR_WEBHOOK_SECRET = os.environ.get("QR_WEBHOOK_SECRET")
    # Public URL of POST /api/orders/webhooks/qr, sent to the provider with each order
    QR_NOTIFICATION_URL = os.environ.get("QR_NOTIFICATION_URL")

    # Where a terminal remembers the cash session it opened
    POS_STATE_PATH = os.environ.get("POS_STATE_PATH", os.path.join("instance", "pos_state.json"))
