# backend/taja/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///taja.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    CURRENCY = os.environ.get("CURRENCY", "NGN")
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")
    API_BASE_URL = os.environ.get("API_BASE_URL", "http://localhost:5000")

    # Payments gateway: "mock" or "flutterwave"
    PAYMENTS_PROVIDER = os.environ.get("PAYMENTS_PROVIDER", "mock")
    FLUTTERWAVE_SECRET_KEY = os.environ.get("FLUTTERWAVE_SECRET_KEY", "")
    FLUTTERWAVE_BASE_URL = os.environ.get("FLUTTERWAVE_BASE_URL", "https://api.flutterwave.com/v3")
    FLUTTERWAVE_WEBHOOK_HASH = os.environ.get("FLUTTERWAVE_WEBHOOK_HASH", "")

    # Every gateway call is bounded by this timeout (seconds)
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "15"))

    # Delivery tracking: "mock", "gokada" or "kwik"
    DELIVERY_PROVIDER = os.environ.get("DELIVERY_PROVIDER", "mock")
    GOKADA_API_KEY = os.environ.get("GOKADA_API_KEY", "")
    GOKADA_BASE_URL = os.environ.get("GOKADA_BASE_URL", "https://api.gokada.ng/v1")
    KWIK_API_KEY = os.environ.get("KWIK_API_KEY", "")
    KWIK_BASE_URL = os.environ.get("KWIK_BASE_URL", "https://api.kwik.delivery/v1")
