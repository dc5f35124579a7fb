from __future__ import annotations

from ..common import IntegrationMisconfiguredError, config_value
from .base import PaymentsGateway
from .flutterwave_provider import FlutterwavePaymentsGateway
from .mock_provider import MockPaymentsGateway


def build_payments_gateway(config) -> PaymentsGateway:
    provider = (config_value(config, "PAYMENTS_PROVIDER", "mock") or "mock").strip().lower()

    if provider == "mock":
        return MockPaymentsGateway()

    if provider != "flutterwave":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (config_value(config, "FLUTTERWAVE_SECRET_KEY", "") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing FLUTTERWAVE_SECRET_KEY")

    frontend_url = (config_value(config, "FRONTEND_URL", "") or "").rstrip("/")
    api_base_url = (config_value(config, "API_BASE_URL", "") or "").rstrip("/")
    return FlutterwavePaymentsGateway(
        secret_key,
        base_url=config_value(config, "FLUTTERWAVE_BASE_URL", "https://api.flutterwave.com/v3"),
        timeout=float(config_value(config, "GATEWAY_TIMEOUT_SECONDS", 15)),
        redirect_url=f"{frontend_url}/orders/payment-complete" if frontend_url else "",
        callback_url=f"{api_base_url}/api/payments/webhook" if api_base_url else "",
    )


def payment_health(config) -> dict:
    provider = (config_value(config, "PAYMENTS_PROVIDER", "mock") or "mock").strip().lower()
    missing = []
    if provider == "flutterwave":
        if not (config_value(config, "FLUTTERWAVE_SECRET_KEY", "") or "").strip():
            missing.append("FLUTTERWAVE_SECRET_KEY")
        if not (config_value(config, "FLUTTERWAVE_WEBHOOK_HASH", "") or "").strip():
            missing.append("FLUTTERWAVE_WEBHOOK_HASH")
    return {
        "status": "misconfigured" if missing else "configured",
        "provider": provider,
        "missing": missing,
    }
